"""
Fallback transcription engine.

Run by the service in a separate interpreter (``FALLBACK_ENGINE_PYTHON``) so the
model and its dependencies stay out of the API process:

    python scripts/whisper_transcribe.py <audio> --output <audio>.txt --model turbo

Writes the transcript to ``--output`` and exits non-zero on failure.
"""

import argparse
import sys
from pathlib import Path

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Transcribe an audio file with openai-whisper")
    parser.add_argument("audio", help="path of the audio file")
    parser.add_argument("--output", help="transcript path (default: <audio>.txt)")
    parser.add_argument("--model", default="turbo", help="whisper model name")
    parser.add_argument("--language", default=None, help="spoken language; detected when omitted")
    return parser.parse_args(argv)

def main(argv=None) -> int:
    args = parse_args(argv)
    audio = Path(args.audio)
    if not audio.is_file():
        print(f"audio file not found: {audio}", file=sys.stderr)
        return 2
    output = Path(args.output) if args.output else audio.with_name(audio.name + ".txt")

    # imported here so --help works without the model stack installed
    import whisper

    model = whisper.load_model(args.model)
    result = model.transcribe(str(audio), language=args.language, task="transcribe")
    text = (result.get("text") or "").strip()
    output.write_text(text, encoding="utf-8")
    print(f"wrote {len(text)} characters to {output}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
