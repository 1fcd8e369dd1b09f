from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from pydantic import ValidationError

from trackrecord.adapters.replay_host import ReplayTradingHost
from trackrecord.adapters.track_record_http import TrackRecordHttpClient
from trackrecord.config import Settings
from trackrecord.domain.canonical import canonical_encode, fields_from_mapping
from trackrecord.domain.digest import GENESIS_HASH, sha256_hex
from trackrecord.domain.events import chain_hash_fields
from trackrecord.logging_context import with_logging_context
from trackrecord.logging_utils import setup_logging
from trackrecord.services.process_lock import single_instance_lock
from trackrecord.services.state_store import ChainStateStore
from trackrecord.services.track_record_service import TrackRecordService
from trackrecord.services.verifier import verify_chain

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trackrecord",
        epilog=(
            "Configuration comes from the environment (TRACK_RECORD_URL, TRACK_RECORD_API_KEY, "
            "TRACK_RECORD_INSTANCE_ID, MAGIC_NUMBER, ...) or a local .env file."
        ),
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("state", help="Print the reconciled local chain state")

    recover_parser = subparsers.add_parser(
        "recover", help="Ask the track record server for the chain head"
    )
    recover_parser.add_argument("--instance-id", default=None)

    verify_parser = subparsers.add_parser("verify", help="Verify an exported event chain")
    verify_parser.add_argument("--events", required=True, help="JSON array or JSONL of envelopes")
    verify_parser.add_argument("--instance-id", default=None)

    canonical_parser = subparsers.add_parser(
        "canonical", help="Print the canonical form and hash of one event"
    )
    canonical_parser.add_argument("--event", required=True, help="JSON file with one event")
    canonical_parser.add_argument("--instance-id", default=None)

    replay_parser = subparsers.add_parser(
        "replay", help="Run the engine against recorded host frames"
    )
    replay_parser.add_argument("--frames", required=True, help="JSONL file, one frame per tick")
    replay_parser.add_argument("--reason", default="REPLAY_END", help="SESSION_END reason")
    replay_parser.add_argument("--point", default="0.00001", help="Price tolerance for modifies")
    return parser


def _print_json(data: object) -> None:
    print(json.dumps(data, sort_keys=True, default=str))


def _read_json_documents(path: str | Path) -> list[dict[str, object]]:
    text = Path(path).read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        documents = json.loads(text, parse_float=Decimal)
    else:
        documents = [
            json.loads(line, parse_float=Decimal) for line in text.splitlines() if line.strip()
        ]
    if not all(isinstance(item, dict) for item in documents):
        raise ValueError(f"{path} must contain JSON objects")
    return documents


def run_state(settings: Settings) -> int:
    loaded = ChainStateStore.from_settings(settings).load()
    if loaded is None:
        _print_json({"found": False, "seqNo": 0, "lastHash": GENESIS_HASH})
        return 0
    _print_json(
        {
            "found": True,
            "seqNo": loaded.seq_no,
            "lastHash": loaded.last_hash,
            "instanceId": loaded.instance_id,
            "primarySeqNo": loaded.primary_seq_no,
            "secondarySeqNo": loaded.secondary_seq_no,
            "hashResolved": loaded.hash_resolved,
        }
    )
    return 0


def run_recover(settings: Settings, instance_id: str | None) -> int:
    resolved = instance_id or settings.instance_id
    with TrackRecordHttpClient(
        settings.track_record_url,
        settings.api_key_value(),
        timeout=settings.http_timeout_seconds,
    ) as client:
        recovered = client.recover(resolved)
    if recovered is None:
        _print_json({"found": False, "instanceId": resolved})
        return 1
    _print_json(
        {
            "found": True,
            "instanceId": resolved,
            "lastSeqNo": recovered.seq_no,
            "lastEventHash": recovered.last_hash,
        }
    )
    return 0


def run_verify(settings: Settings, events_path: str, instance_id: str | None) -> int:
    envelopes = _read_json_documents(events_path)
    result = verify_chain(envelopes, instance_id or settings.instance_id)
    _print_json(result.to_dict())
    return 0 if result.valid else 1


def run_canonical(settings: Settings, event_path: str, instance_id: str | None) -> int:
    documents = _read_json_documents(event_path)
    if len(documents) != 1:
        print(f"expected exactly one event in {event_path}, found {len(documents)}")
        return 2
    event = documents[0]
    payload = event.get("payload") or {}
    if not isinstance(payload, dict):
        print("event payload must be an object")
        return 2
    fields = chain_hash_fields(
        instance_id=str(instance_id or event.get("eaInstanceId") or settings.instance_id),
        event_type=str(event.get("eventType", "")),
        seq_no=int(str(event.get("seqNo", 0))),
        prev_hash=str(event.get("prevHash", GENESIS_HASH)),
        timestamp=int(str(event.get("timestamp", 0))),
        payload=fields_from_mapping(payload),
    )
    canonical = canonical_encode(fields)
    _print_json({"canonical": canonical, "eventHash": sha256_hex(canonical)})
    return 0


def run_replay(settings: Settings, frames_path: str, *, reason: str, point: str) -> int:
    if not settings.is_enabled():
        print("track record is disabled: set TRACK_RECORD_API_KEY and TESTER_MODE=false")
        return 2
    host = ReplayTradingHost.from_jsonl(frames_path, point=point)
    store = ChainStateStore.from_settings(settings)
    try:
        with single_instance_lock(state_dir=settings.state_dir, chain_key=settings.cache_key()):
            with TrackRecordHttpClient(
                settings.track_record_url,
                settings.api_key_value(),
                timeout=settings.http_timeout_seconds,
            ) as client:
                service = TrackRecordService(settings, host, client, store)
                session_started = service.on_init()
                committed = service.on_tick()
                while host.advance():
                    committed += service.on_tick()
                session_ended = service.on_deinit(reason)
    except RuntimeError as exc:
        if str(exc).startswith("LOCKED:"):
            logger.error("track_record_chain_locked", extra={"extra": {"error": str(exc)}})
            print(str(exc))
            return 2
        raise

    state = service.chain.state
    _print_json(
        {
            "frames": host.frame_count,
            "sessionStarted": session_started,
            "sessionEnded": session_ended,
            "eventsCommitted": committed,
            "seqNo": state.seq_no if state is not None else None,
            "lastHash": state.last_hash if state is not None else None,
            "persistenceFailures": service.chain.persistence_failures,
        }
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {exc.error_count()} error(s)\n{exc}")
        return 2
    setup_logging(args.log_level or settings.log_level)

    with with_logging_context(run_id=uuid4().hex, instance_id=settings.instance_id or None):
        try:
            if args.command == "state":
                return run_state(settings)
            if args.command == "recover":
                return run_recover(settings, args.instance_id)
            if args.command == "verify":
                return run_verify(settings, args.events, args.instance_id)
            if args.command == "canonical":
                return run_canonical(settings, args.event, args.instance_id)
            if args.command == "replay":
                return run_replay(settings, args.frames, reason=args.reason, point=args.point)
        except (OSError, TypeError, ValueError) as exc:
            logger.exception(
                "cli_command_failed",
                extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
            )
            print(f"{args.command} failed: {exc}")
            return 1
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
