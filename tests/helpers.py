from __future__ import annotations

import email
from dataclasses import replace

from bounce_handler import VERBOSE_QUIET, BounceConfig
from mail_store import (
    FolderInfo,
    MailSession,
    MailStore,
    MessageStructure,
    MailboxConnectionError,
    bytes_to_text,
    envelope_from_header,
    parse_header_date,
    part_payload,
    sort_dated,
    split_raw_message,
    structure_from_message,
)


DEFAULT_DATE = "Mon, 05 Jan 2009 10:00:00 +0000"


def make_dsn_message(
    *,
    recipient: str = "user@example.test",
    action: str = "failed",
    status: str = "5.1.1",
    diagnostic: str = "smtp; 550 5.1.1 user unknown",
    explanation: str = "This is the mail system. Your message could not be delivered.",
    explanation_encoding: str = "7bit",
    content_type: str = 'multipart/report; report-type=delivery-status;\n\tboundary="BOUNDARY"',
    subject: str = "Undelivered Mail Returned to Sender",
    date: str = DEFAULT_DATE,
) -> bytes:
    return (
        "From: Mail Delivery System <mailer-daemon@mx.example.test>\n"
        "To: sender@example.test\n"
        f"Subject: {subject}\n"
        f"Date: {date}\n"
        "MIME-Version: 1.0\n"
        f"Content-Type: {content_type}\n"
        "\n"
        "--BOUNDARY\n"
        "Content-Type: text/plain; charset=utf-8\n"
        f"Content-Transfer-Encoding: {explanation_encoding}\n"
        "\n"
        f"{explanation}\n"
        "\n"
        "--BOUNDARY\n"
        "Content-Type: message/delivery-status\n"
        "\n"
        "Reporting-MTA: dns; mx.example.test\n"
        "\n"
        f"Final-Recipient: rfc822; {recipient}\n"
        f"Action: {action}\n"
        f"Status: {status}\n"
        f"Diagnostic-Code: {diagnostic}\n"
        "\n"
        "--BOUNDARY--\n"
    ).encode("utf-8")


def make_text_message(
    body: str = "Hello there.",
    *,
    subject: str = "Test message",
    sender: str = "Sender <sender@example.test>",
    date: str = DEFAULT_DATE,
    content_type: str | None = "text/plain; charset=utf-8",
    encoding: str | None = None,
) -> bytes:
    lines = [
        f"From: {sender}",
        "To: bounces@example.test",
        f"Subject: {subject}",
        f"Date: {date}",
    ]
    if content_type is not None:
        lines.append("MIME-Version: 1.0")
        lines.append(f"Content-Type: {content_type}")
    if encoding is not None:
        lines.append(f"Content-Transfer-Encoding: {encoding}")
    return ("\n".join(lines) + "\n\n" + body + "\n").encode("utf-8")


def make_multipart_message(
    body: str,
    *,
    encoding: str = "7bit",
    subject: str = "Delivery failure",
    sender: str = "Postmaster <postmaster@example.test>",
    date: str = DEFAULT_DATE,
) -> bytes:
    return (
        f"From: {sender}\n"
        "To: bounces@example.test\n"
        f"Subject: {subject}\n"
        f"Date: {date}\n"
        "MIME-Version: 1.0\n"
        'Content-Type: multipart/mixed; boundary="PARTS"\n'
        "\n"
        "--PARTS\n"
        "Content-Type: text/plain; charset=utf-8\n"
        f"Content-Transfer-Encoding: {encoding}\n"
        "\n"
        f"{body}\n"
        "--PARTS\n"
        "Content-Type: text/plain\n"
        "\n"
        "second part\n"
        "--PARTS--\n"
    ).encode("utf-8")


class CallbackRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[object, ...]] = []

    def __call__(self, *args: object) -> bool:
        self.calls.append(args)
        return True


def make_config(**overrides: object) -> BounceConfig:
    config = BounceConfig(
        verbose=VERBOSE_QUIET,
        move_unprocessed=False,
        action_callback=CallbackRecorder(),
    )
    return replace(config, **overrides)


class FakeMailStore(MailStore):
    """In-memory store; every session records its calls on the store."""

    def __init__(
        self,
        messages: list[bytes] | None = None,
        *,
        folder: str = "INBOX",
        host: str = "mail.example.test",
        folders: dict[str, list[bytes]] | None = None,
        folder_flags: dict[str, set[str]] | None = None,
        can_create: bool = True,
        unopenable: set[str] | None = None,
        structure_failures: set[int] | None = None,
        delete_failures: set[int] | None = None,
    ) -> None:
        self.host = host
        self.folders: dict[str, list[bytes]] = {folder: list(messages or [])}
        for name, raw_messages in (folders or {}).items():
            self.folders[name] = list(raw_messages)
        self.folder_flags = folder_flags or {}
        self.can_create = can_create
        self.unopenable = unopenable or set()
        self.structure_failures = structure_failures or set()
        self.delete_failures = delete_failures or set()
        self.calls: list[tuple[object, ...]] = []

    def describe(self) -> str:
        return self.host

    def open(self, folder: str | None = None, readonly: bool = False) -> "FakeSession":
        self.calls.append(("open", folder, readonly))
        if folder is not None and (folder in self.unopenable or folder not in self.folders):
            raise MailboxConnectionError(f"Cannot open mailbox {folder}")
        return FakeSession(self, folder, readonly)

    def mutation_calls(self) -> list[tuple[object, ...]]:
        return [call for call in self.calls if call[0] in ("delete", "move", "create", "expunge")]


class FakeSession(MailSession):
    def __init__(self, store: FakeMailStore, folder: str | None, readonly: bool) -> None:
        self.store = store
        self.folder = folder
        self.readonly = readonly
        self.deleted: set[int] = set()
        self.closed = False

    def _raw(self, ref: int) -> bytes:
        return self.store.folders[self.folder][ref - 1]

    def fetch_header(self, ref: int) -> str:
        header, _body = split_raw_message(self._raw(ref))
        return bytes_to_text(header)

    def fetch_structure(self, ref: int) -> MessageStructure | None:
        self.store.calls.append(("structure", self.folder, ref))
        if ref in self.store.structure_failures:
            return None
        return structure_from_message(email.message_from_bytes(self._raw(ref)))

    def fetch_body(self, ref: int, part_path: str | None = None) -> str:
        if not part_path:
            _header, body = split_raw_message(self._raw(ref))
            return bytes_to_text(body)
        return bytes_to_text(part_payload(email.message_from_bytes(self._raw(ref)), part_path))

    def delete(self, ref: int) -> bool:
        self.store.calls.append(("delete", self.folder, ref))
        if self.readonly or ref in self.store.delete_failures:
            return False
        self.deleted.add(ref)
        return True

    def move(self, ref: int, folder: str) -> bool:
        self.store.calls.append(("move", self.folder, ref, folder))
        if self.readonly or folder not in self.store.folders:
            return False
        self.store.folders[folder].append(self._raw(ref))
        self.deleted.add(ref)
        return True

    def expunge(self) -> bool:
        self.store.calls.append(("expunge", self.folder))
        if self.folder is None or self.readonly:
            return True
        messages = self.store.folders[self.folder]
        self.store.folders[self.folder] = [
            raw for ref, raw in enumerate(messages, start=1) if ref not in self.deleted
        ]
        self.deleted = set()
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.store.calls.append(("close", self.folder))

    def refresh(self) -> None:
        self.store.calls.append(("refresh", self.folder))

    def list_folders(self) -> list[FolderInfo]:
        return [
            FolderInfo(name=name, flags=set(self.store.folder_flags.get(name, set())))
            for name in self.store.folders
        ]

    def create_folder(self, name: str) -> bool:
        self.store.calls.append(("create", name))
        if not self.store.can_create:
            return False
        self.store.folders.setdefault(name, [])
        return True

    def count_messages(self, folder: str | None = None) -> int:
        return len(self.store.folders.get(folder or self.folder, []))

    def sort_by_date(self) -> list[tuple[int, object]]:
        entries = [
            (ref, parse_header_date(envelope_from_header(self.fetch_header(ref)).date))
            for ref in range(1, len(self.store.folders[self.folder]) + 1)
        ]
        return sort_dated(entries)
