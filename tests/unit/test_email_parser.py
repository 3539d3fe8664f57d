"""Forwarded thread parsing: header blocks, preface detection, senders, dates and noise."""

from datetime import datetime, timezone

import pytest

from relay.models import Envelope
from relay.utils.email_parser import ForwardedThreadParser, parse_forwarded_email


OUTLOOK_THREAD = (
    "FYI - looping you in on the Acme pilot thread.\n"
    "\n"
    "________________________________\n"
    "From: Jane Doe <jane@acme.com>\n"
    "Sent: Monday, February 3, 2025 10:30 AM\n"
    "To: Sam Lee <sam@example.com>\n"
    "Cc: Pat Kim <pat@acme.com>\n"
    "Subject: RE: Pilot kickoff\n"
    "\n"
    "Sounds good, let's start in March.\n"
    "\n"
    "Sent from my iPhone\n"
    "\n"
    "________________________________\n"
    "From: Sam Lee <sam@example.com>\n"
    "Sent: Friday, January 31, 2025 4:12 PM\n"
    "To: Jane Doe <jane@acme.com>\n"
    "Subject: Pilot kickoff\n"
    "\n"
    "Could we kick off the pilot next month?\n"
    "\n"
    "________________________________\n"
    "From: \"Pat Kim\" <pat@acme.com>\n"
    "Sent: 1/30/2025 9:05:00 AM\n"
    "To: Sam Lee <sam@example.com>\n"
    "Subject: Intro\n"
    "\n"
    "Sam, meet Jane.\n"
)

ENVELOPE = Envelope(sender="Sam Lee <sam@example.com>", subject="Fwd: RE: Pilot kickoff", timestamp=1738600000)


@pytest.fixture
def parser():
    return ForwardedThreadParser()


def test_outlook_thread_with_preface_yields_preface_first(parser):
    messages = parser.parse(OUTLOOK_THREAD, ENVELOPE)

    assert len(messages) == 4
    note = messages[0]
    assert note.is_forwarder_note
    assert note.sender_email == "sam@example.com"
    assert note.sender_name == "Sam Lee"
    assert note.subject == "Fwd: RE: Pilot kickoff"
    assert note.sent_at == datetime.fromtimestamp(1738600000, tz=timezone.utc)
    assert note.body_text == "FYI - looping you in on the Acme pilot thread."

    assert [(m.sender_name, m.sender_email) for m in messages[1:]] == [
        ("Jane Doe", "jane@acme.com"),
        ("Sam Lee", "sam@example.com"),
        ("Pat Kim", "pat@acme.com"),
    ]
    assert [m.subject for m in messages[1:]] == ["RE: Pilot kickoff", "Pilot kickoff", "Intro"]


def test_header_fields_and_dates(parser):
    jane, sam, pat = parser.parse(OUTLOOK_THREAD, ENVELOPE)[1:]

    assert jane.to_header == "Sam Lee <sam@example.com>"
    assert jane.cc_header == "Pat Kim <pat@acme.com>"
    assert sam.cc_header is None
    assert jane.sent_at == datetime(2025, 2, 3, 10, 30)
    assert sam.sent_at == datetime(2025, 1, 31, 16, 12)
    assert pat.sent_at == datetime(2025, 1, 30, 9, 5, 0)


def test_bodies_and_headers_reconstruct_thread_without_preface(parser):
    thread = OUTLOOK_THREAD.split("________________________________\n", 1)[1]
    messages = parser.parse(thread, ENVELOPE)

    assert len(messages) == 3
    assert not any(m.is_forwarder_note for m in messages)
    assert "".join(m.header_raw + m.body_raw for m in messages) == thread


def test_body_is_text_between_header_blocks(parser):
    jane = parser.parse(OUTLOOK_THREAD, ENVELOPE)[1]

    assert jane.body_raw.startswith("\nSounds good")
    assert "Sent from my iPhone" in jane.body_raw
    assert jane.body_text == "Sounds good, let's start in March."


def test_separator_only_preface_is_not_a_message(parser):
    thread = "-----\n\n" + OUTLOOK_THREAD.split("________________________________\n", 1)[1]

    messages = parser.parse(thread, ENVELOPE)

    assert len(messages) == 3
    assert messages[0].sender_email == "jane@acme.com"


def test_date_style_headers_are_recognised(parser):
    thread = (
        "From: Lee Wong <lee@globex.com>\n"
        "Date: Tue, 4 Feb 2025 09:15:00 +0000\n"
        "To: sam@example.com\n"
        "Subject: Conference booth\n"
        "\n"
        "We have a booth at DevSummit.\n"
        "\n"
        "From: sam@example.com\n"
        "Date: 3 Feb 2025 17:40\n"
        "To: Lee Wong <lee@globex.com>\n"
        "Subject: Conference booth\n"
        "\n"
        "Are you going?\n"
    )

    first, second = parser.parse(thread)

    assert first.sender_email == "lee@globex.com"
    assert first.sent_at == datetime(2025, 2, 4, 9, 15, tzinfo=timezone.utc)
    assert second.sender_name is None
    assert second.sender_email == "sam@example.com"
    assert second.sent_at == datetime(2025, 2, 3, 17, 40)


def test_unparseable_date_keeps_message(parser):
    thread = (
        "From: Jane Doe <jane@acme.com>\n"
        "Sent: sometime last week\n"
        "To: Sam Lee <sam@example.com>\n"
        "Subject: Notes\n"
        "\n"
        "Notes attached.\n"
    )

    messages = parser.parse(thread)

    assert len(messages) == 1
    assert messages[0].sent_at is None
    assert messages[0].body_text == "Notes attached."


def test_no_headers_falls_back_to_envelope(parser):
    messages = parser.parse("Quick note: Acme signed the MOU today.", ENVELOPE)

    assert len(messages) == 1
    assert messages[0].is_forwarder_note
    assert messages[0].sender_email == "sam@example.com"
    assert messages[0].body_text == "Quick note: Acme signed the MOU today."


@pytest.mark.parametrize("text", ["", "   \n\t  "])
def test_blank_input_yields_nothing(parser, text):
    assert parser.parse(text, ENVELOPE) == []


def test_crlf_input_is_normalized():
    thread = OUTLOOK_THREAD.replace("\n", "\r\n")

    assert len(parse_forwarded_email(thread, ENVELOPE)) == 4


@pytest.mark.parametrize("value, expected", [
    ("Jane Doe <jane@acme.com>", ("Jane Doe", "jane@acme.com")),
    ('"Doe, Jane" <jane@acme.com>', ("Doe, Jane", "jane@acme.com")),
    ("<jane@acme.com>", (None, "jane@acme.com")),
    ("jane@acme.com", (None, "jane@acme.com")),
    ("Jane Doe", ("Jane Doe", None)),
    ("", (None, None)),
])
def test_parse_sender(value, expected):
    assert ForwardedThreadParser.parse_sender(value) == expected


@pytest.mark.parametrize("value, expected", [
    ("Monday, February 3, 2025 10:30 AM", datetime(2025, 2, 3, 10, 30)),
    ("February 3, 2025 at 10:30 AM", datetime(2025, 2, 3, 10, 30)),
    ("2/3/2025 10:30:32 AM", datetime(2025, 2, 3, 10, 30, 32)),
    ("3 February 2025 10:30", datetime(2025, 2, 3, 10, 30)),
    ("2025-02-03T10:30:00", datetime(2025, 2, 3, 10, 30)),
    ("not a date", None),
    ("", None),
])
def test_parse_date(value, expected):
    assert ForwardedThreadParser.parse_date(value) == expected


def test_clean_body_strips_boilerplate():
    body = (
        "\nSee you at the summit.\n"
        "Get Outlook for iOS\n"
        "\n"
        "CONFIDENTIALITY NOTICE: This e-mail is for the sole use of the intended recipient."
    )

    assert ForwardedThreadParser.clean_body(body) == "See you at the summit."


def test_clean_body_strips_disclaimer_after_rule():
    body = (
        "Budget approved.\n"
        "--\n"
        "This email and any attachments are confidential and intended solely for the addressee."
    )

    assert ForwardedThreadParser.clean_body(body) == "Budget approved."


def test_load_eml_prefers_plain_text(parser, tmp_path):
    eml = tmp_path / "forward.eml"
    eml.write_bytes(
        b"From: Sam Lee <sam@example.com>\r\n"
        b"Subject: Fwd: Pilot kickoff\r\n"
        b"Date: Mon, 03 Feb 2025 10:30:00 +0000\r\n"
        b"MIME-Version: 1.0\r\n"
        b"Content-Type: multipart/alternative; boundary=\"XX\"\r\n"
        b"\r\n"
        b"--XX\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"Plain body here.\r\n"
        b"--XX\r\n"
        b"Content-Type: text/html; charset=utf-8\r\n"
        b"\r\n"
        b"<p>HTML body here.</p>\r\n"
        b"--XX--\r\n"
    )

    envelope, body = parser.load_eml_file(eml)

    assert envelope.sender == "Sam Lee <sam@example.com>"
    assert envelope.subject == "Fwd: Pilot kickoff"
    assert envelope.timestamp == datetime(2025, 2, 3, 10, 30, tzinfo=timezone.utc).timestamp()
    assert "Plain body here." in body
    assert "HTML" not in body


def test_load_eml_converts_html_only(parser, tmp_path):
    eml = tmp_path / "html.eml"
    eml.write_bytes(
        b"From: sam@example.com\r\n"
        b"Subject: Update\r\n"
        b"Content-Type: text/html; charset=utf-8\r\n"
        b"\r\n"
        b"<p>Acme <b>signed</b> today.</p>\r\n"
    )

    envelope, body = parser.load_eml_file(eml)

    assert envelope.timestamp is None
    assert "Acme **signed** today." in body
