# --------------------------- relay/cli.py ----------------------------
"""
Relay command line.

USAGE:
    relay serve [--host 0.0.0.0] [--port 8000]
    relay reclassify [--limit 200]
    relay parse path/to/thread.(eml|txt)
    relay ingest-eml path/to/forward.eml
"""

import argparse
import logging
import sys
from pathlib import Path

from config import settings
from relay.models import Envelope
from relay.utils.email_parser import ForwardedThreadParser


def _load_thread(parser: ForwardedThreadParser, path: Path):
    if path.suffix.lower() == ".eml":
        return parser.load_eml_file(path)
    return Envelope(), path.read_text(encoding="utf-8", errors="replace")


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("relay.api.app:create_app", factory=True, host=args.host, port=args.port)
    return 0


def cmd_parse(args) -> int:
    parser = ForwardedThreadParser()
    envelope, body = _load_thread(parser, args.path)
    messages = parser.parse(body, envelope)
    if not messages:
        print("⚠️  No messages found")
        return 1

    print(f"📧 {len(messages)} message(s) in {args.path.name}")
    for i, msg in enumerate(messages, start=1):
        note = " (forwarder note)" if msg.is_forwarder_note else ""
        print(f"\n{i}. {msg.sender_name or ''} <{msg.sender_email or '?'}>{note}")
        print(f"   Sent:    {msg.sent_at.isoformat() if msg.sent_at else 'unknown'}")
        print(f"   Subject: {msg.subject or '(no subject)'}")
        preview = " ".join(msg.body_text.split())[:120]
        print(f"   Body:    {preview}")
    return 0


def cmd_ingest_eml(args) -> int:
    from relay.api.deps import build_services

    services = build_services()
    envelope, body = services.pipeline.parser.load_eml_file(args.path)
    if not body.strip():
        print("⚠️  Email has no body, nothing to ingest")
        return 1

    summary = services.pipeline.ingest(body, envelope, forwarder=envelope.sender)
    icon = "✅" if summary["status"] == "processed" else "⚠️ "
    print(f"{icon} {summary['status']}: {len(summary['message_ids'])} stored, {summary['duplicates']} duplicate(s)")
    if summary.get("action"):
        print(f"   Action: {summary['action']}")
    if summary.get("review_id"):
        print(f"   Review: {summary['review_id']} (sms sent: {summary['sms_sent']})")
    if summary.get("error"):
        print(f"   Error:  {summary['error']}")
    return 0


def cmd_reclassify(args) -> int:
    from relay.api.deps import build_services

    counts = build_services().pipeline.reclassify_pending(limit=args.limit)
    print("🔄 Reclassification finished")
    for key, value in counts.items():
        print(f"   {key}: {value}")
    return 0 if counts["errors"] == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", description="Forwarded email triage for partner engagements")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)

    reclassify = sub.add_parser("reclassify", help="Classify stored messages that have no classification")
    reclassify.add_argument("--limit", type=int, default=200)
    reclassify.set_defaults(func=cmd_reclassify)

    parse = sub.add_parser("parse", help="Split a thread file into messages without storing anything")
    parse.add_argument("path", type=Path)
    parse.set_defaults(func=cmd_parse)

    ingest = sub.add_parser("ingest-eml", help="Run a saved .eml forward through the intake pipeline")
    ingest.add_argument("path", type=Path)
    ingest.set_defaults(func=cmd_ingest_eml)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
    args = build_parser().parse_args(argv)

    path = getattr(args, "path", None)
    if path is not None and not path.exists():
        print(f"❌ File not found: {path}")
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
