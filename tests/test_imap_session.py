from __future__ import annotations

import imaplib

import pytest

import mail_store
from mail_store import (
    FolderInfo,
    ImapMailStore,
    ImapTarget,
    MailboxConnectionError,
    decode_mailbox_name,
    encode_mailbox_name,
    parse_fetch_literals,
    parse_folder_line,
    parse_message_count,
    quote_mailbox_name,
)
from tests.helpers import make_dsn_message, make_text_message


class FakeIMAP:
    def __init__(
        self,
        messages: list[bytes] | None = None,
        *,
        select_status: str = "OK",
        login_error: bool = False,
        copy_status: str = "OK",
        folders: list[bytes] | None = None,
    ) -> None:
        self.messages = messages or []
        self.select_status = select_status
        self.login_error = login_error
        self.copy_status = copy_status
        self.folders = folders or []
        self.calls: list[tuple[object, ...]] = []

    def login(self, user: str, password: str):
        self.calls.append(("login", user, password))
        if self.login_error:
            raise imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        return "OK", [b"Logged in"]

    def select(self, mailbox: str, readonly: bool = False):
        self.calls.append(("select", mailbox, readonly))
        if self.select_status != "OK":
            return self.select_status, [b"Mailbox does not exist"]
        return "OK", [str(len(self.messages)).encode("ascii")]

    def fetch(self, message_set: str, query: str):
        self.calls.append(("fetch", message_set, query))
        if ":" in message_set:
            first, last = (int(value) for value in message_set.split(":"))
            refs = range(first, last + 1)
        else:
            refs = [int(message_set)]
        data: list[object] = []
        for ref in refs:
            raw = self.messages[ref - 1]
            header, body = mail_store.split_raw_message(raw)
            if "HEADER.FIELDS (DATE)" in query:
                literal = b"".join(
                    line + b"\n" for line in header.splitlines() if line.lower().startswith(b"date:")
                ) + b"\n"
            elif "[HEADER]" in query:
                literal = header
            elif "[TEXT]" in query:
                literal = body
            elif "[]" in query:
                literal = raw
            else:
                literal = b"part"
            data.append((f"{ref} (BODY[] {{{len(literal)}}}".encode("ascii"), literal))
            data.append(b")")
        return "OK", data

    def store(self, message_set: str, command: str, flags: str):
        self.calls.append(("store", message_set, command, flags))
        return "OK", [b""]

    def copy(self, message_set: str, mailbox: str):
        self.calls.append(("copy", message_set, mailbox))
        return self.copy_status, [b""]

    def expunge(self):
        self.calls.append(("expunge",))
        return "OK", [b""]

    def close(self):
        self.calls.append(("close",))
        return "OK", [b""]

    def logout(self):
        self.calls.append(("logout",))
        return "BYE", [b""]

    def list(self):
        self.calls.append(("list",))
        return "OK", self.folders

    def create(self, mailbox: str):
        self.calls.append(("create", mailbox))
        return "OK", [b""]

    def status(self, mailbox: str, names: str):
        self.calls.append(("status", mailbox, names))
        return "OK", [f"{mailbox} (MESSAGES 7)".encode("ascii")]


TARGET = ImapTarget(host="mail.example.test", port=993, security="ssl")


def open_store(monkeypatch: pytest.MonkeyPatch, imap: FakeIMAP, folder: str | None = "INBOX", readonly: bool = False):
    monkeypatch.setattr(mail_store, "connect_imap", lambda _target: imap)
    store = ImapMailStore(TARGET, "bounces@example.test", "secret")
    return store.open(folder, readonly=readonly)


def test_open_logs_in_and_selects_folder(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a"), make_text_message("b")])

    session = open_store(monkeypatch, imap, "INBOX", readonly=True)

    assert imap.calls[:2] == [
        ("login", "bounces@example.test", "secret"),
        ("select", '"INBOX"', True),
    ]
    assert session.count_messages() == 2


def test_open_without_folder_does_not_select(monkeypatch) -> None:
    imap = FakeIMAP()

    session = open_store(monkeypatch, imap, folder=None)
    session.close()

    assert [call[0] for call in imap.calls] == ["login", "logout"]


def test_select_failure_raises_and_logs_out(monkeypatch) -> None:
    imap = FakeIMAP(select_status="NO")

    with pytest.raises(MailboxConnectionError, match="Mailbox does not exist"):
        open_store(monkeypatch, imap, "Missing")

    assert imap.calls[-1] == ("logout",)


def test_login_failure_raises_connection_error(monkeypatch) -> None:
    imap = FakeIMAP(login_error=True)

    with pytest.raises(MailboxConnectionError, match="AUTHENTICATIONFAILED"):
        open_store(monkeypatch, imap)

    assert imap.calls[-1] == ("logout",)


def test_connect_failure_raises_connection_error(monkeypatch) -> None:
    def refuse(_target):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(mail_store, "connect_imap", refuse)
    store = ImapMailStore(TARGET, "bounces@example.test", "secret")

    with pytest.raises(MailboxConnectionError, match="connection refused"):
        store.open("INBOX")


def test_unsupported_protocol_and_security_are_rejected() -> None:
    with pytest.raises(ValueError, match="protocol"):
        ImapMailStore(ImapTarget(protocol="pop3"), "user", "secret")
    with pytest.raises(ValueError, match="security"):
        ImapMailStore(ImapTarget(security="starttls-maybe"), "user", "secret")


def test_connect_imap_uses_implicit_tls(monkeypatch) -> None:
    created: list[tuple[object, ...]] = []

    class FakeSSLClient:
        def __init__(self, host, port, ssl_context=None, timeout=None) -> None:
            created.append((host, port, ssl_context is not None, timeout))

    monkeypatch.setattr(mail_store.imaplib, "IMAP4_SSL", FakeSSLClient)

    mail_store.connect_imap(TARGET)

    assert created == [("mail.example.test", 993, True, mail_store.SECONDS_TIMEOUT)]


def test_connect_imap_starts_tls(monkeypatch) -> None:
    events: list[str] = []

    class FakePlainClient:
        def __init__(self, host, port, timeout=None) -> None:
            events.append(f"connect {host}:{port}")

        def starttls(self, ssl_context=None):
            events.append("starttls")

    monkeypatch.setattr(mail_store.imaplib, "IMAP4", FakePlainClient)

    mail_store.connect_imap(ImapTarget(host="mail.example.test", security="tls", validate_cert=False))

    assert events == ["connect mail.example.test:143", "starttls"]


def test_fetch_primitives(monkeypatch) -> None:
    imap = FakeIMAP([make_dsn_message(recipient="gone@example.test")])
    session = open_store(monkeypatch, imap)

    header = session.fetch_header(1)
    envelope = session.fetch_envelope(1)
    body = session.fetch_body(1)
    structure = session.fetch_structure(1)

    assert "Content-Type: multipart/report" in header
    assert envelope.subject == "Undelivered Mail Returned to Sender"
    assert "--BOUNDARY" in body
    assert structure is not None
    assert structure.subtype == "REPORT"
    assert ("fetch", "1", "(BODY.PEEK[HEADER])") in imap.calls
    assert ("fetch", "1", "(BODY.PEEK[TEXT])") in imap.calls
    assert imap.calls[-1] == ("fetch", "1", "(BODY.PEEK[])")


def test_message_fetched_for_structure_is_reused(monkeypatch) -> None:
    imap = FakeIMAP([make_dsn_message(recipient="gone@example.test"), make_text_message("second")])
    session = open_store(monkeypatch, imap)

    session.fetch_structure(1)
    fetches = [call for call in imap.calls if call[0] == "fetch"]
    header = session.fetch_header(1)
    body = session.fetch_body(1)
    report = session.fetch_body(1, "2")

    assert [call for call in imap.calls if call[0] == "fetch"] == fetches
    assert "Subject: Undelivered Mail Returned to Sender" in header
    assert "--BOUNDARY" in body
    assert "Final-Recipient: rfc822; gone@example.test" in report

    session.fetch_body(2)
    assert imap.calls[-1] == ("fetch", "2", "(BODY.PEEK[TEXT])")


def test_expunge_drops_cached_message(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    session.fetch_structure(1)
    session.expunge()
    session.fetch_header(1)

    assert imap.calls[-1] == ("fetch", "1", "(BODY.PEEK[HEADER])")


def test_fetch_part_uses_section_path(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    session.fetch_body(1, "2")

    assert imap.calls[-1] == ("fetch", "1", "(BODY.PEEK[2])")


def test_delete_flags_message(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    assert session.delete(1) is True
    assert imap.calls[-1] == ("store", "1", "+FLAGS.SILENT", r"(\Deleted)")


def test_move_copies_then_flags(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    assert session.move(1, "INBOX.hard") is True
    assert imap.calls[-2:] == [
        ("copy", "1", '"INBOX.hard"'),
        ("store", "1", "+FLAGS.SILENT", r"(\Deleted)"),
    ]


def test_failed_copy_does_not_flag(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")], copy_status="NO")
    session = open_store(monkeypatch, imap)

    assert session.move(1, "INBOX.hard") is False
    assert not [call for call in imap.calls if call[0] == "store"]


def test_close_expunges_through_imap_close_and_logs_out(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    with session:
        pass
    session.close()

    assert imap.calls[-2:] == [("close",), ("logout",)]
    assert imap.calls.count(("logout",)) == 1


def test_refresh_reselects_folder(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a"), make_text_message("b")])
    session = open_store(monkeypatch, imap, readonly=False)
    imap.messages.pop()

    session.refresh()

    assert imap.calls[-1] == ("select", '"INBOX"', False)
    assert session.count_messages() == 1


def test_list_and_create_folders(monkeypatch) -> None:
    imap = FakeIMAP(
        folders=[
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasNoChildren) "/" "Entw&APw-rfe"',
            b'(\\Noselect \\HasChildren) "/" Parent',
        ]
    )
    session = open_store(monkeypatch, imap, folder=None)

    folders = session.list_folders()
    created = session.create_folder("Entwürfe.alt")

    assert folders == [
        FolderInfo(name="INBOX", flags={"\\HasNoChildren"}),
        FolderInfo(name="Entwürfe", flags={"\\HasNoChildren"}),
        FolderInfo(name="Parent", flags={"\\Noselect", "\\HasChildren"}),
    ]
    assert created is True
    assert imap.calls[-1] == ("create", '"Entw&APw-rfe.alt"')


def test_count_messages_of_other_folder_uses_status(monkeypatch) -> None:
    imap = FakeIMAP([make_text_message("a")])
    session = open_store(monkeypatch, imap)

    assert session.count_messages("Archive") == 7
    assert imap.calls[-1] == ("status", '"Archive"', "(MESSAGES)")


def test_sort_by_date_orders_oldest_first(monkeypatch) -> None:
    imap = FakeIMAP(
        [
            make_text_message("a", date="Sat, 10 Jan 2009 10:00:00 +0000"),
            make_text_message("b", date="garbage"),
            make_text_message("c", date="Thu, 01 Jan 2009 10:00:00 +0000"),
        ]
    )
    session = open_store(monkeypatch, imap)

    ordered = session.sort_by_date()

    assert [ref for ref, _sent_at in ordered] == [3, 1, 2]
    assert ordered[-1][1] is None
    assert imap.calls[-1] == ("fetch", "1:3", "(BODY.PEEK[HEADER.FIELDS (DATE)])")


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        (b'(\\HasNoChildren) "." "INBOX.hard"', FolderInfo("INBOX.hard", {"\\HasNoChildren"})),
        (b'() NIL "Shared"', FolderInfo("Shared", set())),
        (b'(\\HasNoChildren) "/" "Say \\"hi\\""', FolderInfo('Say "hi"', {"\\HasNoChildren"})),
        (b"garbage", None),
    ],
)
def test_parse_folder_line(line: bytes, expected) -> None:
    assert parse_folder_line(line) == expected


def test_mailbox_names_use_modified_utf7() -> None:
    assert encode_mailbox_name("Entwürfe") == "Entw&APw-rfe"
    assert encode_mailbox_name("R&D") == "R&-D"
    assert decode_mailbox_name("Entw&APw-rfe") == "Entwürfe"
    assert decode_mailbox_name("R&-D") == "R&D"
    assert decode_mailbox_name(encode_mailbox_name("受信トレイ")) == "受信トレイ"
    assert quote_mailbox_name("Entwürfe") == '"Entw&APw-rfe"'


def test_parse_fetch_literals_and_counts() -> None:
    data = [(b"3 (BODY[HEADER] {5}", b"hello"), b")", (b"4 (BODY[HEADER] {2}", b"hi"), b")"]

    assert parse_fetch_literals(data) == [(3, b"hello"), (4, b"hi")]
    assert parse_message_count([b"12"]) == 12
    assert parse_message_count([b'"Archive" (MESSAGES 4)']) == 4
    assert parse_message_count([None]) == 0
