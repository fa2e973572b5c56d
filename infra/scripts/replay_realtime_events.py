import argparse
import json
from pathlib import Path

from ghostwriter.logging_config import setup_logging
from ghostwriter.realtime.normalizer import EventNormalizer


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay a captured realtime event log through the event normalizer."
    )
    parser.add_argument("--file", required=True, help="Path to a JSON-lines file of server events")
    parser.add_argument(
        "--partials",
        action="store_true",
        help="Also print partial transcripts as they accumulate",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level for normalizer warnings")
    return parser.parse_args()


def replay(event_file: Path, show_partials: bool) -> dict[str, int]:
    normalizer = EventNormalizer()
    counts = {"events": 0, "skipped": 0, "finals": 0, "tool_calls": 0}
    seen_calls: set[str] = set()

    with event_file.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            counts["events"] += 1
            normalized = normalizer.normalize(line)
            if normalized is None:
                counts["skipped"] += 1
                print(f"[{line_number}] undecodable frame skipped")
                continue

            if normalized.session_id:
                print(f"[{line_number}] session {normalized.session_id}")
            if normalized.error:
                print(f"[{line_number}] error: {normalized.error}")
            if show_partials and normalized.partial and normalized.partial[1]:
                speaker, text = normalized.partial
                print(f"[{line_number}] ... {speaker.value}: {text}")
            for final in normalized.finals:
                counts["finals"] += 1
                print(f"[{line_number}] {final.speaker.value} ({final.key}): {final.text}")
            if normalized.progress:
                print(f"[{line_number}] progress {json.dumps(normalized.progress)}")
            for call in normalized.tool_calls:
                # the same call shows up in item.done and response.done
                if call.id in seen_calls:
                    continue
                seen_calls.add(call.id)
                counts["tool_calls"] += 1
                arguments = json.dumps(call.arguments) if call.arguments is not None else "<pending>"
                print(
                    f"[{line_number}] tool {call.name} id={call.id} "
                    f"response={call.response_id} args={arguments}"
                )
    return counts


def main() -> None:
    args = parse_args()
    setup_logging(args.log_level)
    event_file = Path(args.file)
    if not event_file.exists():
        raise FileNotFoundError(f"Event file not found: {event_file}")
    counts = replay(event_file, args.partials)
    print(
        f"Replayed {counts['events']} events: {counts['finals']} final transcripts, "
        f"{counts['tool_calls']} tool calls, {counts['skipped']} skipped"
    )


if __name__ == "__main__":
    main()
