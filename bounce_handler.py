#!/usr/bin/env python3
"""Bounce mail handler: classify delivery failures and clean up the bounce mailbox."""

from __future__ import annotations

import argparse
import base64
import binascii
import imaplib
import inspect
import json
import os
import quopri
import re
import sys
import time
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Iterable, Mapping

import bounce_rules
from bounce_callbacks import CsvCallback, echo_callback
from bounce_rules import UNRECOGNIZED_RULE_CAT, UNRECOGNIZED_RULE_NO, ClassificationResult
from mail_store import (
    DEFAULT_IMAP_PORT,
    SECURITY_MODES,
    SUPPORTED_PROTOCOLS,
    Envelope,
    ImapMailStore,
    ImapTarget,
    LocalMailStore,
    MailboxConnectionError,
    MailSession,
    MailStore,
    MailStoreError,
    MessageStructure,
)


__version__ = "1.0.0"

VERBOSE_QUIET = 0
VERBOSE_SIMPLE = 1
VERBOSE_REPORT = 2
VERBOSE_DEBUG = 3
VERBOSE_LEVELS = {
    "quiet": VERBOSE_QUIET,
    "simple": VERBOSE_SIMPLE,
    "report": VERBOSE_REPORT,
    "debug": VERBOSE_DEBUG,
}

DEFAULT_CONFIG_FILE = "bounce_config.json"
ENV_PASSWORD = "BOUNCE_HANDLER_PASSWORD"
DEFAULT_HOST = "localhost"
DEFAULT_FOLDER = "INBOX"
DEFAULT_MAX_MESSAGES = 3000
DEFAULT_HARD_MAILBOX = "INBOX.hard"
DEFAULT_SOFT_MAILBOX = "INBOX.soft"
DEFAULT_UNPROCESSED_MAILBOX = "INBOX.unprocessed"
MESSAGE_BODY_LIMIT = 1000
NO_SUBJECT = "[NO SUBJECT]"
STRIPPED_EMAIL_PREFIX = "TO:<"

ROUTE_DSN = "DSN"
ROUTE_BODY = "BODY"

DISPOSITION_DELETE = "delete"
DISPOSITION_MOVE_HARD = "move-hard"
DISPOSITION_MOVE_SOFT = "move-soft"
DISPOSITION_NONE = "none"

CONTENT_TYPE_PATTERN = re.compile(
    r"(?:^|\n)Content-Type:((?:[^\n]|\n[\t ])+)(?:\n[^\t ]|$)",
    re.IGNORECASE,
)
MULTIPART_REPORT_PATTERN = re.compile(r"multipart\s*/\s*report", re.IGNORECASE)
DELIVERY_STATUS_PATTERN = re.compile(
    r"(?:^|[;\s])report-type\s*=\s*[\"']?delivery-status(?![\w-])",
    re.IGNORECASE,
)
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class BounceConfigError(ValueError):
    """Fatal configuration problem: the run cannot continue."""


@dataclass(frozen=True)
class BounceConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_IMAP_PORT
    protocol: str = "imap"
    security: str = "notls"
    validate_cert: bool = True
    username: str = ""
    password: str = field(default="", repr=False)
    folder: str = DEFAULT_FOLDER
    max_messages: int = DEFAULT_MAX_MESSAGES
    test_mode: bool = False
    disable_delete: bool = False
    purge_unprocessed: bool = False
    move_hard: bool = False
    hard_mailbox: str = DEFAULT_HARD_MAILBOX
    move_soft: bool = False
    soft_mailbox: str = DEFAULT_SOFT_MAILBOX
    move_unprocessed: bool = True
    unprocessed_mailbox: str = DEFAULT_UNPROCESSED_MAILBOX
    delete_before: date | None = None
    use_fetch_structure: bool = True
    verbose: int = VERBOSE_SIMPLE
    debug_dsn_rule: bool = False
    debug_body_rule: bool = False
    dsn_rules: Callable[..., object] = bounce_rules.dsn_rules
    body_rules: Callable[..., object] = bounce_rules.body_rules
    custom_dsn_rules: Callable[..., object] | None = None
    custom_body_rules: Callable[..., object] | None = None
    action_callback: Callable[..., object] | None = None


class Reporter:
    """Console output gated by a verbosity level."""

    def __init__(self, verbose: int = VERBOSE_SIMPLE) -> None:
        self.verbose = verbose

    def __call__(self, message: str = "", level: int = VERBOSE_SIMPLE) -> None:
        if self.verbose >= level:
            print(message)

    def error(self, message: str) -> None:
        if self.verbose > VERBOSE_QUIET:
            print(message, file=sys.stderr)


# ---------------------------------------------------------------------------
# Structure detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Detection:
    route: str
    structure: MessageStructure | None = None


def is_parameter(parameters: tuple[tuple[str, str], ...], attribute: str, value: str) -> bool:
    for name, current in parameters:
        if name.upper() == attribute.upper() and current.upper() == value.upper():
            return True
    return False


def is_delivery_status_report(structure: MessageStructure | None) -> bool:
    return (
        structure is not None
        and structure.maintype == "multipart"
        and structure.subtype.upper() == "REPORT"
        and is_parameter(structure.parameters, "REPORT-TYPE", "delivery-status")
    )


def find_content_type(raw_header: str) -> str | None:
    """Return the unfolded-for-matching Content-Type value, or None when absent."""
    match = CONTENT_TYPE_PATTERN.search(raw_header.replace("\r\n", "\n"))
    if not match:
        return None
    return match.group(1)


def is_delivery_status_content_type(content_type: str) -> bool:
    return bool(
        MULTIPART_REPORT_PATTERN.search(content_type)
        and DELIVERY_STATUS_PATTERN.search(content_type)
    )


class StructureDetector:
    name = "structure"

    def __init__(self, reporter: Reporter, debug_body_rule: bool = False) -> None:
        self.reporter = reporter
        self.debug_body_rule = debug_body_rule

    def detect(self, session: MailSession, ref: int) -> Detection:
        structure = session.fetch_structure(ref)
        if is_delivery_status_report(structure):
            return Detection(ROUTE_DSN, structure)

        self.reporter(f"Msg #{ref} is not a standard DSN message", VERBOSE_REPORT)
        if self.debug_body_rule:
            if structure is not None and structure.description:
                self.reporter(f"  Content-Type : {structure.description}", VERBOSE_DEBUG)
            else:
                self.reporter("  Content-Type : unsupported", VERBOSE_DEBUG)
        return Detection(ROUTE_BODY, structure)


class HeaderDetector:
    name = "header"

    def __init__(self, reporter: Reporter, debug_body_rule: bool = False) -> None:
        self.reporter = reporter
        self.debug_body_rule = debug_body_rule

    def detect(self, session: MailSession, ref: int) -> Detection:
        raw_header = session.fetch_header(ref)
        content_type = find_content_type(raw_header)
        if content_type is None:
            self.reporter(
                f"Msg #{ref} is not a well-formatted MIME mail, missing Content-Type",
                VERBOSE_REPORT,
            )
            if self.debug_body_rule:
                self.reporter(f"  Headers: \n{raw_header}\n", VERBOSE_DEBUG)
            return Detection(ROUTE_BODY)

        if is_delivery_status_content_type(content_type):
            return Detection(ROUTE_DSN)

        self.reporter(f"Msg #{ref} is not a standard DSN message", VERBOSE_REPORT)
        if self.debug_body_rule:
            self.reporter(f"  Content-Type : {content_type}", VERBOSE_DEBUG)
        return Detection(ROUTE_BODY)


def make_detector(config: BounceConfig, reporter: Reporter) -> StructureDetector | HeaderDetector:
    if config.use_fetch_structure:
        return StructureDetector(reporter, debug_body_rule=config.debug_body_rule)
    return HeaderDetector(reporter, debug_body_rule=config.debug_body_rule)


# ---------------------------------------------------------------------------
# Content decoding
# ---------------------------------------------------------------------------

def decode_payload(payload: str, encoding: str) -> bytes | None:
    """Undo a transfer encoding. Returns None when the encoding is left as is."""
    normalized = (encoding or "").strip().lower()
    if normalized == "quoted-printable":
        return quopri.decodestring(payload.encode("utf-8", errors="replace"))
    if normalized == "base64":
        try:
            return base64.b64decode(payload.encode("ascii", errors="ignore"))
        except (binascii.Error, ValueError):
            return None
    return None


def decode_charset(data: bytes, charset: str) -> str:
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def decode_content(payload: str, encoding: str, charset: str = "") -> str:
    data = decode_payload(payload, encoding)
    if data is None:
        return payload
    return decode_charset(data, charset)


def extract_dsn_content(
    session: MailSession,
    ref: int,
    structure: MessageStructure | None,
) -> tuple[str, str]:
    explanation = session.fetch_body(ref, "1")
    if structure is not None and structure.parts:
        first_part = structure.parts[0]
        explanation = decode_content(explanation, first_part.encoding, first_part.charset)
    # The delivery-status part is consumed as raw field text.
    report = session.fetch_body(ref, "2")
    return explanation, report


def extract_body_content(session: MailSession, ref: int, structure: MessageStructure) -> str | None:
    kind = structure.kind
    if kind == "text":
        return session.fetch_body(ref, "1")
    if kind == "multipart":
        body = session.fetch_body(ref, "1")
        if structure.parts:
            first_part = structure.parts[0]
            body = decode_content(body, first_part.encoding, first_part.charset)
        return body
    if kind == "message":
        body = decode_content(session.fetch_body(ref), structure.encoding, structure.charset)
        return body[:MESSAGE_BODY_LIMIT]
    return None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def normalize_result(raw: object) -> ClassificationResult:
    if isinstance(raw, ClassificationResult):
        result = replace(raw)
    elif isinstance(raw, Mapping):
        result = ClassificationResult(
            email=str(raw.get("email") or ""),
            bounce_type=str(raw.get("bounce_type") or ""),
            remove=raw.get("remove", 0),
            rule_no=str(raw.get("rule_no") or UNRECOGNIZED_RULE_NO),
            rule_cat=str(raw.get("rule_cat") or UNRECOGNIZED_RULE_CAT),
            status_code=str(raw.get("status_code") or ""),
            action=str(raw.get("action") or ""),
            diagnostic_code=str(raw.get("diagnostic_code") or ""),
        )
    else:
        raise TypeError(
            f"Classification engine returned {type(raw).__name__}; "
            "expected ClassificationResult or a mapping."
        )
    if STRIPPED_EMAIL_PREFIX in result.email:
        result.email = result.email.replace(STRIPPED_EMAIL_PREFIX, "")
    return result


def classify_dsn(config: BounceConfig, explanation: str, report: str) -> ClassificationResult:
    result = normalize_result(config.dsn_rules(explanation, report, config.debug_dsn_rule))
    if config.custom_dsn_rules is not None:
        result = normalize_result(
            config.custom_dsn_rules(result, explanation, report, config.debug_dsn_rule)
        )
    return result


def classify_body(config: BounceConfig, body: str, structure: MessageStructure) -> ClassificationResult:
    result = normalize_result(config.body_rules(body, structure, config.debug_body_rule))
    if config.custom_body_rules is not None:
        result = normalize_result(
            config.custom_body_rules(result, body, structure, config.debug_body_rule)
        )
    return result


# ---------------------------------------------------------------------------
# Disposition
# ---------------------------------------------------------------------------

def is_truthy_remove(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false")
    return bool(value)


def compute_disposition(result: ClassificationResult, config: BounceConfig) -> str:
    if config.move_hard and result.bounce_type == "hard":
        return DISPOSITION_MOVE_HARD
    if config.move_soft and result.bounce_type == "soft":
        return DISPOSITION_MOVE_SOFT
    if config.disable_delete:
        return DISPOSITION_NONE
    if is_truthy_remove(result.remove):
        return DISPOSITION_DELETE
    return DISPOSITION_NONE


def disposition_description(result: ClassificationResult, config: BounceConfig) -> object:
    if config.move_hard and result.bounce_type == "hard":
        return "moved (hard)"
    if config.move_soft and result.bounce_type == "soft":
        return "moved (soft)"
    if config.disable_delete:
        return 0
    return result.remove


@dataclass(frozen=True)
class CallbackParams:
    """Positional arguments handed to the action callback, in order."""

    msgnum: int
    bounce_type: str
    email: str
    subject: str
    header: Envelope | bool
    remove: object
    rule_no: str
    rule_cat: str
    total_fetched: int
    body: str
    raw_header: str
    raw_body: str
    status_code: str
    action: str
    diagnostic_code: str

    def as_args(self) -> tuple[object, ...]:
        return tuple(getattr(self, item.name) for item in fields(self))


def accepted_positional_count(callback: Callable[..., object]) -> int | None:
    """How many positional arguments the callback takes; None means any number."""
    try:
        signature = inspect.signature(callback)
    except (TypeError, ValueError):
        return None
    count = 0
    for parameter in signature.parameters.values():
        if parameter.kind == inspect.Parameter.VAR_POSITIONAL:
            return None
        if parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            count += 1
    return count


def dispatch_action(callback: Callable[..., object], params: CallbackParams) -> object:
    args = params.as_args()
    limit = accepted_positional_count(callback)
    if limit is not None:
        args = args[:limit]
    return callback(*args)


def strip_tags(value: str) -> str:
    return HTML_TAG_PATTERN.sub("", value)


def process_bounce(
    session: MailSession,
    ref: int,
    detection: Detection,
    config: BounceConfig,
    total_fetched: int,
    reporter: Reporter,
) -> ClassificationResult | None:
    """Classify one message and report it to the action callback.

    Returns None when the message could not be classified at all (missing
    structure or unsupported content type).
    """
    structure = detection.structure
    if structure is None:
        structure = session.fetch_structure(ref)

    if detection.route == ROUTE_DSN:
        body, report = extract_dsn_content(session, ref, structure)
        result = classify_dsn(config, body, report)
    else:
        if structure is None:
            reporter(f"Msg #{ref} has no readable structure", VERBOSE_REPORT)
            return None
        extracted = extract_body_content(session, ref, structure)
        if extracted is None:
            reporter(f"Msg #{ref} is unsupported Content-Type:{structure.maintype}", VERBOSE_REPORT)
            return None
        body = extracted
        result = classify_body(config, body, structure)

    envelope = session.fetch_envelope(ref)
    email_address = result.email
    header: Envelope | bool = False
    if not result.matched:
        header = envelope
        if not email_address.strip() and envelope.from_address:
            email_address = envelope.from_address

    if config.test_mode:
        reporter(f"Match: {result.rule_no}:{result.rule_cat}; {result.bounce_type}; {email_address}")
        return result

    params = CallbackParams(
        msgnum=ref,
        bounce_type=result.bounce_type,
        email=email_address,
        subject=strip_tags(envelope.subject) or NO_SUBJECT,
        header=header,
        remove=disposition_description(result, config),
        rule_no=result.rule_no,
        rule_cat=result.rule_cat,
        total_fetched=total_fetched,
        body=body,
        raw_header=session.fetch_header(ref),
        raw_body=session.fetch_body(ref),
        status_code=result.status_code,
        action=result.action,
        diagnostic_code=result.diagnostic_code,
    )
    dispatch_action(config.action_callback, params)
    return result


def ensure_folder(
    store: MailStore,
    name: str,
    ensured: set[str],
    reporter: Reporter,
) -> None:
    if name in ensured:
        return
    mailbox_exist(store, name, create=True, reporter=reporter)
    ensured.add(name)


def apply_disposition(
    session: MailSession,
    ref: int,
    result: ClassificationResult,
    config: BounceConfig,
    ensured: set[str],
    reporter: Reporter,
) -> str:
    """Carry out the disposition of a matched message; test mode never mutates."""
    if config.test_mode:
        return DISPOSITION_NONE

    disposition = compute_disposition(result, config)
    if disposition == DISPOSITION_DELETE:
        if not session.delete(ref):
            reporter(f"Msg #{ref} could not be deleted", VERBOSE_REPORT)
    elif disposition in (DISPOSITION_MOVE_HARD, DISPOSITION_MOVE_SOFT):
        folder = config.hard_mailbox if disposition == DISPOSITION_MOVE_HARD else config.soft_mailbox
        ensure_folder(session.store, folder, ensured, reporter)
        if not session.move(ref, folder):
            reporter(f"Msg #{ref} could not be moved to {folder}", VERBOSE_REPORT)
    return disposition


# ---------------------------------------------------------------------------
# Batch run
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunCounters:
    fetched: int
    processed: int
    unprocessed: int
    deleted: int
    moved: int

    def as_tuple(self) -> tuple[int, int, int, int, int]:
        return (self.fetched, self.processed, self.unprocessed, self.deleted, self.moved)


def resolve_run_config(config: BounceConfig, host: str | None = None) -> BounceConfig:
    target_host = config.host if host is None else host
    run_config = config
    if "gmail" in target_host.lower():
        # Gmail cannot create the destination folders.
        run_config = replace(run_config, move_hard=False, move_soft=False)
    if run_config.move_hard and not run_config.disable_delete:
        run_config = replace(run_config, disable_delete=True)
    return run_config


def require_action_callback(config: BounceConfig) -> Callable[..., object]:
    if config.action_callback is None or not callable(config.action_callback):
        raise BounceConfigError("Action function not found!")
    return config.action_callback


def report_run_mode(config: BounceConfig, reporter: Reporter) -> None:
    if config.test_mode:
        reporter("Running in test mode, not deleting messages from mailbox")
    elif config.disable_delete:
        if config.move_hard:
            reporter("Running in move mode")
        else:
            reporter("Running in disableDelete mode, not deleting messages from mailbox")
    else:
        reporter("Processed messages will be deleted from mailbox")


def process_mailbox(
    session: MailSession,
    config: BounceConfig,
    max_messages: int | None = None,
    reporter: Reporter | None = None,
) -> RunCounters:
    """Classify and dispose of the messages of the session's selected folder.

    The session is closed before returning, also when a fatal error stops
    the run.
    """
    if reporter is None:
        reporter = Reporter(config.verbose)
    require_action_callback(config)
    run_config = resolve_run_config(config, session.store.host)
    if max_messages:
        run_config = replace(run_config, max_messages=max_messages)

    processed = 0
    unprocessed = 0
    deleted = 0
    moved = 0
    ensured: set[str] = set()
    try:
        if run_config.delete_before is not None:
            if run_config.test_mode:
                reporter(f"Test mode, skipping global delete based on date of {run_config.delete_before}")
            else:
                reporter(f"Processing global delete based on date of {run_config.delete_before}")
                global_delete(session.store, run_config.delete_before, reporter)
                session.refresh()

        total = session.count_messages()
        fetched = min(total, run_config.max_messages)
        reporter(f"Total: {total} messages")
        if fetched < total:
            reporter(f"Processing first {fetched} messages")
        report_run_mode(run_config, reporter)

        detector = make_detector(run_config, reporter)
        for ref in range(1, fetched + 1):
            detection = detector.detect(session, ref)
            result = process_bounce(session, ref, detection, run_config, total, reporter)

            if result is not None and result.matched:
                processed += 1
                disposition = apply_disposition(session, ref, result, run_config, ensured, reporter)
                if disposition == DISPOSITION_DELETE:
                    deleted += 1
                elif disposition in (DISPOSITION_MOVE_HARD, DISPOSITION_MOVE_SOFT):
                    moved += 1
                continue

            unprocessed += 1
            if run_config.test_mode:
                continue
            if run_config.purge_unprocessed and not run_config.disable_delete:
                if not session.delete(ref):
                    reporter(f"Msg #{ref} could not be deleted", VERBOSE_REPORT)
                deleted += 1
            if run_config.move_unprocessed:
                ensure_folder(session.store, run_config.unprocessed_mailbox, ensured, reporter)
                if not session.move(ref, run_config.unprocessed_mailbox):
                    reporter(
                        f"Msg #{ref} could not be moved to {run_config.unprocessed_mailbox}",
                        VERBOSE_REPORT,
                    )
    except Exception:
        session.close()
        raise

    reporter()
    reporter("Closing mailbox, and purging messages")
    if not run_config.test_mode and not session.expunge():
        reporter("Expunge failed", VERBOSE_REPORT)
    session.close()

    counters = RunCounters(
        fetched=fetched,
        processed=processed,
        unprocessed=unprocessed,
        deleted=deleted,
        moved=moved,
    )
    reporter(f"Read: {counters.fetched} messages")
    reporter(f"{counters.processed} action taken")
    reporter(f"{counters.unprocessed} no action taken")
    reporter(f"{counters.deleted} messages deleted")
    reporter(f"{counters.moved} messages moved")
    return counters


# ---------------------------------------------------------------------------
# Mailbox maintenance
# ---------------------------------------------------------------------------

def mailbox_exist(
    store: MailStore,
    name: str,
    create: bool = True,
    reporter: Reporter | None = None,
) -> bool:
    if reporter is None:
        reporter = Reporter()
    if not name or not name.strip():
        raise BounceConfigError(f"Invalid mailbox name for move operation. Cannot continue: {name!r}")

    with store.open() as session:
        if any(folder.name == name for folder in session.list_folders()):
            return True
        if not create:
            return False
        if not session.create_folder(name):
            raise BounceConfigError(
                f"Mailbox {name} does not exist and could not be created on {store.describe()}."
            )
    reporter(f"Created mailbox {name}", VERBOSE_REPORT)
    return True


def is_sent_folder(name: str) -> bool:
    return "sent" in name.lower()


def global_delete(store: MailStore, cutoff: date, reporter: Reporter | None = None) -> int:
    """Delete messages dated before the cutoff from every folder except sent ones.

    Returns how many delete requests the store accepted.
    """
    if reporter is None:
        reporter = Reporter()
    cutoff_at = datetime.combine(cutoff, datetime.min.time()).astimezone()

    with store.open() as maintenance:
        folders = maintenance.list_folders()

    total_deleted = 0
    for folder in folders:
        if is_sent_folder(folder.name):
            reporter(f"Skipping sent folder {folder.name}", VERBOSE_REPORT)
            continue
        if any(flag.lower() == "\\noselect" for flag in folder.flags):
            continue

        deleted = 0
        try:
            with store.open(folder.name) as session:
                for ref, sent_at in session.sort_by_date():
                    if sent_at is None or sent_at.astimezone() >= cutoff_at:
                        break
                    if session.delete(ref):
                        deleted += 1
                session.expunge()
        except MailboxConnectionError as error:
            reporter.error(f"Global delete skipped {folder.name}: {error}")
            continue

        reporter(f"{folder.name}: {deleted} messages deleted before {cutoff.isoformat()}", VERBOSE_REPORT)
        total_deleted += deleted
    return total_deleted


def open_remote(config: BounceConfig, reporter: Reporter | None = None) -> MailSession:
    if reporter is None:
        reporter = Reporter(config.verbose)
    target = ImapTarget(
        host=config.host,
        port=config.port,
        protocol=config.protocol,
        security=config.security,
        validate_cert=config.validate_cert,
    )
    try:
        store = ImapMailStore(target, config.username, config.password)
    except ValueError as error:
        raise BounceConfigError(str(error)) from error
    session = store.open(config.folder, readonly=config.test_mode)
    reporter(f"Connected to: {store.describe()}")
    return session


def open_local(
    path: Path | str,
    test_mode: bool = False,
    reporter: Reporter | None = None,
    folders: Iterable[str] = (),
) -> MailSession:
    """Open a local mailbox file; ``folders`` are the sibling files it may use as folders."""
    if reporter is None:
        reporter = Reporter()
    session = LocalMailStore(path, folders).open(readonly=test_mode)
    reporter(f"Opened {path}")
    return session


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def parse_boolean_config(raw_value: object, source: str, default: bool) -> bool:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool):
        return raw_value
    raise ValueError(f"{source} must be a boolean.")


def parse_nonempty_string_config(raw_value: object, source: str, default: str) -> str:
    if raw_value is None:
        return default
    if not isinstance(raw_value, str):
        raise ValueError(f"{source} must be a string.")
    cleaned = raw_value.strip()
    if not cleaned:
        raise ValueError(f"{source} cannot be empty.")
    return cleaned


def parse_positive_int_config(raw_value: object, source: str, default: int) -> int:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise ValueError(f"{source} must be an integer.")
    if raw_value < 1:
        raise ValueError(f"{source} must be >= 1.")
    return raw_value


def parse_choice_config(raw_value: object, source: str, default: str, choices: tuple[str, ...]) -> str:
    value = parse_nonempty_string_config(raw_value, source, default).lower()
    if value not in choices:
        raise ValueError(f"{source} must be one of: {', '.join(choices)}.")
    return value


def parse_date_config(raw_value: object, source: str, default: date | None) -> date | None:
    if raw_value is None:
        return default
    if not isinstance(raw_value, str) or not ISO_DATE_PATTERN.match(raw_value.strip()):
        raise ValueError(f"{source} must be a date formatted as yyyy-mm-dd.")
    try:
        return date.fromisoformat(raw_value.strip())
    except ValueError as error:
        raise ValueError(f"{source} is not a valid date: {error}") from error


def parse_verbosity_config(raw_value: object, source: str, default: int) -> int:
    if raw_value is None:
        return default
    if isinstance(raw_value, str) and raw_value.strip().lower() in VERBOSE_LEVELS:
        return VERBOSE_LEVELS[raw_value.strip().lower()]
    if isinstance(raw_value, int) and not isinstance(raw_value, bool) and raw_value in VERBOSE_LEVELS.values():
        return raw_value
    raise ValueError(f"{source} must be one of: {', '.join(VERBOSE_LEVELS)} (or 0-3).")


def load_config(path: Path) -> BounceConfig:
    defaults = BounceConfig()
    if not path.exists():
        return defaults

    try:
        with path.open("r", encoding="utf-8") as file:
            raw = json.load(file)
    except (OSError, json.JSONDecodeError) as error:
        raise BounceConfigError(f"Could not read config file {path}: {error}") from error

    if not isinstance(raw, dict):
        raise BounceConfigError(f"Config file {path} must contain a JSON object.")

    try:
        return BounceConfig(
            host=parse_nonempty_string_config(raw.get("host"), "host", defaults.host),
            port=parse_positive_int_config(raw.get("port"), "port", defaults.port),
            protocol=parse_choice_config(raw.get("protocol"), "protocol", defaults.protocol, SUPPORTED_PROTOCOLS),
            security=parse_choice_config(raw.get("security"), "security", defaults.security, SECURITY_MODES),
            validate_cert=parse_boolean_config(raw.get("validate_cert"), "validate_cert", defaults.validate_cert),
            username=parse_nonempty_string_config(raw.get("username"), "username", defaults.username),
            password=parse_nonempty_string_config(raw.get("password"), "password", defaults.password),
            folder=parse_nonempty_string_config(raw.get("folder"), "folder", defaults.folder),
            max_messages=parse_positive_int_config(raw.get("max_messages"), "max_messages", defaults.max_messages),
            test_mode=parse_boolean_config(raw.get("test_mode"), "test_mode", defaults.test_mode),
            disable_delete=parse_boolean_config(raw.get("disable_delete"), "disable_delete", defaults.disable_delete),
            purge_unprocessed=parse_boolean_config(
                raw.get("purge_unprocessed"),
                "purge_unprocessed",
                defaults.purge_unprocessed,
            ),
            move_hard=parse_boolean_config(raw.get("move_hard"), "move_hard", defaults.move_hard),
            hard_mailbox=parse_nonempty_string_config(raw.get("hard_mailbox"), "hard_mailbox", defaults.hard_mailbox),
            move_soft=parse_boolean_config(raw.get("move_soft"), "move_soft", defaults.move_soft),
            soft_mailbox=parse_nonempty_string_config(raw.get("soft_mailbox"), "soft_mailbox", defaults.soft_mailbox),
            move_unprocessed=parse_boolean_config(
                raw.get("move_unprocessed"),
                "move_unprocessed",
                defaults.move_unprocessed,
            ),
            unprocessed_mailbox=parse_nonempty_string_config(
                raw.get("unprocessed_mailbox"),
                "unprocessed_mailbox",
                defaults.unprocessed_mailbox,
            ),
            delete_before=parse_date_config(raw.get("delete_before"), "delete_before", defaults.delete_before),
            use_fetch_structure=parse_boolean_config(
                raw.get("use_fetch_structure"),
                "use_fetch_structure",
                defaults.use_fetch_structure,
            ),
            verbose=parse_verbosity_config(raw.get("verbose"), "verbose", defaults.verbose),
            debug_dsn_rule=parse_boolean_config(raw.get("debug_dsn_rule"), "debug_dsn_rule", defaults.debug_dsn_rule),
            debug_body_rule=parse_boolean_config(
                raw.get("debug_body_rule"),
                "debug_body_rule",
                defaults.debug_body_rule,
            ),
        )
    except BounceConfigError:
        raise
    except ValueError as error:
        raise BounceConfigError(f"Config file {path}: {error}") from error


def apply_environment(config: BounceConfig, environ: Mapping[str, str] | None = None) -> BounceConfig:
    if environ is None:
        environ = os.environ
    password = environ.get(ENV_PASSWORD, "")
    if password:
        return replace(config, password=password)
    return config


def cli_option_was_set(option_name: str, argv: list[str]) -> bool:
    option_prefix = f"{option_name}="
    return any(arg == option_name or arg.startswith(option_prefix) for arg in argv)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bounce-handler",
        allow_abbrev=False,
        description=(
            "Scan a mailbox of bounced mail, classify every delivery failure and "
            "delete or move the bounces according to the configured policy."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config-file",
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to config JSON file (default: {DEFAULT_CONFIG_FILE}). File is optional.",
    )
    parser.add_argument(
        "--local",
        default="",
        help="Process a local mbox file (or single message file) instead of an IMAP account.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"IMAP host (default: {DEFAULT_HOST}).")
    parser.add_argument(
        "--port",
        default=DEFAULT_IMAP_PORT,
        type=int,
        help=f"IMAP port (default: {DEFAULT_IMAP_PORT}).",
    )
    parser.add_argument(
        "--protocol",
        default="imap",
        type=str.lower,
        choices=SUPPORTED_PROTOCOLS,
        help="Mail protocol (default: imap).",
    )
    parser.add_argument(
        "--security",
        default="notls",
        type=str.lower,
        choices=SECURITY_MODES,
        help="Connection security: notls, tls (STARTTLS) or ssl (default: notls).",
    )
    parser.add_argument(
        "--no-validate-cert",
        action="store_true",
        help="Do not verify the server certificate for tls/ssl connections.",
    )
    parser.add_argument("--username", default="", help="Mailbox user name.")
    parser.add_argument(
        "--folder",
        default=DEFAULT_FOLDER,
        help=f"Folder holding the bounces (default: {DEFAULT_FOLDER}).",
    )
    parser.add_argument(
        "--max-messages",
        default=DEFAULT_MAX_MESSAGES,
        type=int,
        help=f"Process at most this many messages (default: {DEFAULT_MAX_MESSAGES}).",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Open the mailbox read-only and only report what would match.",
    )
    parser.add_argument(
        "--disable-delete",
        action="store_true",
        help="Never delete matched bounces.",
    )
    parser.add_argument(
        "--purge-unprocessed",
        action="store_true",
        help="Delete messages no rule matched as well.",
    )
    parser.add_argument(
        "--move-hard",
        action="store_true",
        help="Move hard bounces to --hard-mailbox instead of deleting them (implies --disable-delete).",
    )
    parser.add_argument(
        "--hard-mailbox",
        default=DEFAULT_HARD_MAILBOX,
        help=f"Destination folder for hard bounces (default: {DEFAULT_HARD_MAILBOX}).",
    )
    parser.add_argument(
        "--move-soft",
        action="store_true",
        help="Move soft bounces to --soft-mailbox.",
    )
    parser.add_argument(
        "--soft-mailbox",
        default=DEFAULT_SOFT_MAILBOX,
        help=f"Destination folder for soft bounces (default: {DEFAULT_SOFT_MAILBOX}).",
    )
    parser.add_argument(
        "--no-move-unprocessed",
        action="store_true",
        help="Leave messages no rule matched in place.",
    )
    parser.add_argument(
        "--unprocessed-mailbox",
        default=DEFAULT_UNPROCESSED_MAILBOX,
        help=f"Destination folder for unmatched messages (default: {DEFAULT_UNPROCESSED_MAILBOX}).",
    )
    parser.add_argument(
        "--delete-before",
        default=None,
        help=(
            "Before processing, delete messages dated before this day (yyyy-mm-dd) "
            "from every folder except sent folders. With --local, the folders are the "
            "mailbox file and the hard, soft and unprocessed destination files."
        ),
    )
    parser.add_argument(
        "--header-detection",
        action="store_true",
        help="Detect delivery-status reports from the Content-Type header instead of the MIME structure.",
    )
    parser.add_argument(
        "--verbose",
        default=None,
        type=str.lower,
        choices=tuple(VERBOSE_LEVELS),
        help="Output level (default: simple).",
    )
    parser.add_argument("--debug-dsn-rule", action="store_true", help="Print DSN rule debugging output.")
    parser.add_argument("--debug-body-rule", action="store_true", help="Print body rule debugging output.")
    parser.add_argument(
        "--csv-log",
        default="",
        help="Append every classified bounce to a monthly CSV file in this directory.",
    )
    return parser.parse_args(argv)


def apply_cli_overrides(config: BounceConfig, args: argparse.Namespace, argv: list[str]) -> BounceConfig:
    changes: dict[str, object] = {}
    string_options = (
        ("--host", "host", args.host),
        ("--username", "username", args.username),
        ("--folder", "folder", args.folder),
        ("--hard-mailbox", "hard_mailbox", args.hard_mailbox),
        ("--soft-mailbox", "soft_mailbox", args.soft_mailbox),
        ("--unprocessed-mailbox", "unprocessed_mailbox", args.unprocessed_mailbox),
    )
    for option, name, value in string_options:
        if cli_option_was_set(option, argv):
            changes[name] = parse_nonempty_string_config(value, option, getattr(config, name))

    if cli_option_was_set("--port", argv):
        changes["port"] = parse_positive_int_config(args.port, "--port", config.port)
    if cli_option_was_set("--max-messages", argv):
        changes["max_messages"] = parse_positive_int_config(args.max_messages, "--max-messages", config.max_messages)
    if cli_option_was_set("--protocol", argv):
        changes["protocol"] = args.protocol
    if cli_option_was_set("--security", argv):
        changes["security"] = args.security
    if cli_option_was_set("--delete-before", argv):
        changes["delete_before"] = parse_date_config(args.delete_before, "--delete-before", config.delete_before)
    if cli_option_was_set("--verbose", argv):
        changes["verbose"] = VERBOSE_LEVELS[args.verbose]

    flag_options = (
        ("--test-mode", "test_mode", True),
        ("--disable-delete", "disable_delete", True),
        ("--purge-unprocessed", "purge_unprocessed", True),
        ("--move-hard", "move_hard", True),
        ("--move-soft", "move_soft", True),
        ("--no-move-unprocessed", "move_unprocessed", False),
        ("--no-validate-cert", "validate_cert", False),
        ("--header-detection", "use_fetch_structure", False),
        ("--debug-dsn-rule", "debug_dsn_rule", True),
        ("--debug-body-rule", "debug_body_rule", True),
    )
    for option, name, value in flag_options:
        if cli_option_was_set(option, argv):
            changes[name] = value

    if not changes:
        return config
    return replace(config, **changes)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)

    try:
        config = load_config(Path(args.config_file))
        config = apply_environment(config)
        config = apply_cli_overrides(config, args, argv)
        callback = CsvCallback(Path(args.csv_log)) if args.csv_log else echo_callback
        config = replace(config, action_callback=callback)
    except ValueError as error:
        print(error, file=sys.stderr)
        return 2

    reporter = Reporter(config.verbose)
    started = time.perf_counter()
    try:
        if args.local:
            session = open_local(
                Path(args.local),
                test_mode=config.test_mode,
                reporter=reporter,
                folders=(config.hard_mailbox, config.soft_mailbox, config.unprocessed_mailbox),
            )
        else:
            session = open_remote(config, reporter)
        with session:
            process_mailbox(session, config, reporter=reporter)
    except BounceConfigError as error:
        print(error, file=sys.stderr)
        return 2
    except MailStoreError as error:
        print(error, file=sys.stderr)
        return 1
    except (imaplib.IMAP4.error, OSError) as error:
        print(f"Mail store error: {error}", file=sys.stderr)
        return 1

    reporter(f"Seconds to process: {time.perf_counter() - started:.2f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
