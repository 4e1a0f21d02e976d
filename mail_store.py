"""Mail store sessions used by the bounce handler.

A store knows how to reach a mailbox (remote IMAP account or a local mailbox
file). Each ``open`` call returns an independent session that owns one
connection and, optionally, one selected folder. Messages are addressed by
their 1-based position in the selected folder.
"""

from __future__ import annotations

import base64
import email
import email.header
import imaplib
import mailbox
import re
import ssl
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.message import Message
from email.parser import Parser
from email.utils import collapse_rfc2231_value, parsedate_to_datetime
from pathlib import Path
from typing import Iterable


SECONDS_TIMEOUT = 6000
DEFAULT_IMAP_PORT = 143
SUPPORTED_PROTOCOLS = ("imap",)
SECURITY_MODES = ("notls", "tls", "ssl")
SUPPORTED_CONTENT_TYPES = ("text", "multipart", "message")


class MailStoreError(Exception):
    """Base error for mail store failures."""


class MailboxConnectionError(MailStoreError):
    """Raised when a mailbox cannot be opened."""


@dataclass
class FolderInfo:
    name: str
    flags: set[str]


@dataclass(frozen=True)
class MessageStructure:
    """MIME shape of a message or of one of its parts."""

    maintype: str
    subtype: str
    parameters: tuple[tuple[str, str], ...] = ()
    encoding: str = "7bit"
    description: str = ""
    parts: tuple["MessageStructure", ...] = ()

    @property
    def kind(self) -> str:
        if self.maintype in SUPPORTED_CONTENT_TYPES:
            return self.maintype
        return "unsupported"

    @property
    def charset(self) -> str:
        return self.parameter("charset")

    def parameter(self, attribute: str) -> str:
        for name, value in self.parameters:
            if name.upper() == attribute.upper():
                return value
        return ""


@dataclass(frozen=True)
class Envelope:
    """Decoded summary headers of one message."""

    subject: str
    from_address: str
    to_address: str
    date: str
    message_id: str


@dataclass(frozen=True)
class ImapTarget:
    host: str = "localhost"
    port: int = DEFAULT_IMAP_PORT
    protocol: str = "imap"
    security: str = "notls"
    validate_cert: bool = True


def decode_header_value(value: str | None) -> str:
    if not value:
        return ""
    decoded_fragments = []
    for fragment, encoding in email.header.decode_header(value):
        if isinstance(fragment, bytes):
            try:
                decoded_fragments.append(fragment.decode(encoding or "utf-8", errors="replace"))
            except LookupError:
                decoded_fragments.append(fragment.decode("utf-8", errors="replace"))
        else:
            decoded_fragments.append(fragment)
    return "".join(decoded_fragments).strip()


def unfold_header_value(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\r?\n(?=[ \t])", "", str(value))


def envelope_from_header(raw_header: str) -> Envelope:
    # compat32 keeps malformed Date values as plain text.
    message = Parser(policy=policy.compat32).parsestr(raw_header, headersonly=True)
    return Envelope(
        subject=decode_header_value(unfold_header_value(message.get("Subject"))),
        from_address=decode_header_value(unfold_header_value(message.get("From"))),
        to_address=decode_header_value(unfold_header_value(message.get("To"))),
        date=decode_header_value(unfold_header_value(message.get("Date"))),
        message_id=decode_header_value(unfold_header_value(message.get("Message-ID"))),
    )


def parse_header_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def structure_from_message(message: Message) -> MessageStructure:
    parameters: list[tuple[str, str]] = []
    if message.get("Content-Type") is not None:
        for name, value in (message.get_params(header="content-type") or [])[1:]:
            parameters.append((name.upper(), collapse_rfc2231_value(value)))

    parts: tuple[MessageStructure, ...] = ()
    if message.is_multipart():
        parts = tuple(
            structure_from_message(part)
            for part in message.get_payload()
            if isinstance(part, Message)
        )

    return MessageStructure(
        maintype=message.get_content_maintype().lower(),
        subtype=message.get_content_subtype().upper(),
        parameters=tuple(parameters),
        encoding=str(message.get("Content-Transfer-Encoding", "7bit")).strip().lower(),
        description=str(message.get("Content-Description", "")).strip(),
        parts=parts,
    )


def split_raw_message(raw: bytes) -> tuple[bytes, bytes]:
    """Split raw RFC 822 bytes into the header block and the body."""
    # A leading blank line means the header block is empty.
    leading = re.match(rb"\r?\n", raw)
    if leading:
        return b"", raw[leading.end() :]
    match = re.search(rb"\r?\n\r?\n", raw)
    if not match:
        return raw, b""
    return raw[: match.end()], raw[match.end() :]


def part_payload(message: Message, part_path: str) -> bytes:
    """Return the raw, still transfer-encoded body of an IMAP-style part path."""
    current = message
    for token in part_path.split("."):
        index = int(token) - 1
        if current.is_multipart():
            payload = current.get_payload()
            if index < 0 or index >= len(payload):
                return b""
            current = payload[index]
        elif index != 0:
            return b""
    if current.is_multipart():
        _header, body = split_raw_message(current.as_bytes())
        return body
    payload = current.get_payload(decode=False)
    if isinstance(payload, bytes):
        return payload
    # Undecodable bytes were kept as surrogates by the parser.
    return (payload or "").encode("utf-8", errors="surrogateescape")


def bytes_to_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def parse_folder_line(line: bytes) -> FolderInfo | None:
    text = line.decode("utf-8", errors="replace")
    match = re.match(r"^\((?P<flags>[^)]*)\)\s+(?:\"(?P<delim>[^\"]*)\"|NIL)\s+(?P<name>.+)$", text)
    if not match:
        return None

    flags = {token.strip() for token in match.group("flags").split() if token.strip()}
    raw_name = match.group("name").strip()
    if raw_name.startswith('"') and raw_name.endswith('"'):
        # IMAP quoted string escaping.
        name = raw_name[1:-1].replace(r"\\", "\\").replace(r'\"', '"')
    else:
        name = raw_name
    return FolderInfo(name=decode_mailbox_name(name), flags=flags)


def decode_mailbox_name(name: str) -> str:
    """Decode an IMAP modified UTF-7 mailbox name (RFC 3501 section 5.1.3)."""

    def replace(match: re.Match[str]) -> str:
        encoded = match.group(1)
        if not encoded:
            return "&"
        padded = encoded.replace(",", "/") + "=" * (-len(encoded) % 4)
        try:
            return base64.b64decode(padded).decode("utf-16-be")
        except (ValueError, UnicodeDecodeError):
            return match.group(0)

    return re.sub(r"&([A-Za-z0-9+,]*)-", replace, name)


def encode_mailbox_name(name: str) -> str:
    result: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            encoded = base64.b64encode(raw).decode("ascii").rstrip("=").replace("/", ",")
            result.append(f"&{encoded}-")
            pending.clear()

    for char in name:
        if 0x20 <= ord(char) <= 0x7E:
            flush()
            result.append("&-" if char == "&" else char)
        else:
            pending.append(char)
    flush()
    return "".join(result)


def quote_mailbox_name(folder_name: str) -> str:
    escaped = encode_mailbox_name(folder_name).replace("\\", "\\\\").replace('"', r'\"')
    return f'"{escaped}"'


def decode_imap_response(data: object) -> str:
    if not isinstance(data, list):
        return ""
    parts: list[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        else:
            parts.append(str(item))
    return " | ".join(parts).strip()


def parse_fetch_literals(fetch_data: Iterable[object]) -> list[tuple[int, bytes]]:
    literals: list[tuple[int, bytes]] = []
    for part in fetch_data:
        if not isinstance(part, tuple) or len(part) < 2:
            continue
        meta, body = part
        if not isinstance(meta, bytes) or not isinstance(body, bytes):
            continue
        number_match = re.match(rb"\s*(\d+)", meta)
        if number_match:
            literals.append((int(number_match.group(1)), body))
    return literals


def parse_fetch_body(fetch_data: Iterable[object]) -> bytes | None:
    for _number, body in parse_fetch_literals(fetch_data):
        return body
    return None


def parse_message_count(data: object) -> int:
    if not isinstance(data, list) or not data or data[0] is None:
        return 0
    raw = data[0]
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="ignore")
    count_match = re.search(r"MESSAGES\s+(\d+)", str(raw))
    if count_match:
        return int(count_match.group(1))
    try:
        return int(str(raw).strip())
    except ValueError:
        return 0


class MailSession:
    """One open connection to a store, optionally with a selected folder."""

    store: "MailStore"
    folder: str | None
    readonly: bool

    def __enter__(self) -> "MailSession":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def fetch_header(self, ref: int) -> str:
        raise NotImplementedError

    def fetch_structure(self, ref: int) -> MessageStructure | None:
        raise NotImplementedError

    def fetch_body(self, ref: int, part_path: str | None = None) -> str:
        """Fetch a part body, or the whole message body when no path is given."""
        raise NotImplementedError

    def fetch_envelope(self, ref: int) -> Envelope:
        return envelope_from_header(self.fetch_header(ref))

    def delete(self, ref: int) -> bool:
        raise NotImplementedError

    def move(self, ref: int, folder: str) -> bool:
        raise NotImplementedError

    def expunge(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def refresh(self) -> None:
        """Re-read the selected folder after other sessions changed it."""
        raise NotImplementedError

    def list_folders(self) -> list[FolderInfo]:
        raise NotImplementedError

    def create_folder(self, name: str) -> bool:
        raise NotImplementedError

    def count_messages(self, folder: str | None = None) -> int:
        raise NotImplementedError

    def sort_by_date(self) -> list[tuple[int, datetime | None]]:
        """Positions of the selected folder ordered by their Date header."""
        raise NotImplementedError


class MailStore:
    """Factory of sessions against one account or mailbox file."""

    host: str = ""

    def describe(self) -> str:
        raise NotImplementedError

    def open(self, folder: str | None = None, readonly: bool = False) -> MailSession:
        raise NotImplementedError


def sort_dated(entries: Iterable[tuple[int, datetime | None]]) -> list[tuple[int, datetime | None]]:
    def sort_key(entry: tuple[int, datetime | None]) -> tuple[int, float, int]:
        ref, value = entry
        if value is None:
            return (1, 0.0, ref)
        return (0, value.astimezone().timestamp(), ref)

    return sorted(entries, key=sort_key)


# ---------------------------------------------------------------------------
# IMAP
# ---------------------------------------------------------------------------

def create_ssl_context(validate_cert: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not validate_cert:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def connect_imap(target: ImapTarget) -> imaplib.IMAP4:
    if target.security == "ssl":
        return imaplib.IMAP4_SSL(
            target.host,
            target.port,
            ssl_context=create_ssl_context(target.validate_cert),
            timeout=SECONDS_TIMEOUT,
        )
    imap = imaplib.IMAP4(target.host, target.port, timeout=SECONDS_TIMEOUT)
    if target.security == "tls":
        imap.starttls(ssl_context=create_ssl_context(target.validate_cert))
    return imap


class ImapMailStore(MailStore):
    def __init__(self, target: ImapTarget, username: str, password: str) -> None:
        if target.protocol not in SUPPORTED_PROTOCOLS:
            raise ValueError(f"Unsupported mail protocol {target.protocol!r}.")
        if target.security not in SECURITY_MODES:
            raise ValueError(f"Unsupported security mode {target.security!r}.")
        self.target = target
        self.host = target.host
        self.username = username
        self.password = password

    def describe(self) -> str:
        return f"{self.target.host} ({self.username})"

    def open(self, folder: str | None = None, readonly: bool = False) -> "ImapSession":
        try:
            imap = connect_imap(self.target)
        except (imaplib.IMAP4.error, OSError) as error:
            raise MailboxConnectionError(
                f"Cannot create {self.target.protocol} connection to {self.target.host}: {error}"
            ) from error

        try:
            imap.login(self.username, self.password)
            exists = 0
            if folder is not None:
                status, data = imap.select(quote_mailbox_name(folder), readonly=readonly)
                if status != "OK":
                    detail = decode_imap_response(data) or "select failed"
                    raise MailboxConnectionError(
                        f"Cannot open mailbox {folder} on {self.target.host}: {detail}"
                    )
                exists = parse_message_count(data)
        except (imaplib.IMAP4.error, OSError) as error:
            logout_quietly(imap)
            raise MailboxConnectionError(
                f"Cannot create {self.target.protocol} connection to {self.target.host}: {error}"
            ) from error
        except MailboxConnectionError:
            logout_quietly(imap)
            raise

        return ImapSession(self, imap, folder=folder, readonly=readonly, exists=exists)


def logout_quietly(imap: imaplib.IMAP4) -> None:
    try:
        imap.logout()
    except (imaplib.IMAP4.error, OSError):
        pass


class ImapSession(MailSession):
    def __init__(
        self,
        store: ImapMailStore,
        imap: imaplib.IMAP4,
        folder: str | None,
        readonly: bool,
        exists: int = 0,
    ) -> None:
        self.store = store
        self.imap = imap
        self.folder = folder
        self.readonly = readonly
        self.exists = exists
        self.closed = False
        # Last full message downloaded by fetch_structure, as (ref, raw).
        self.cached: tuple[int, bytes] | None = None

    def _fetch_literal(self, ref: int, query: str) -> bytes | None:
        try:
            status, fetch_data = self.imap.fetch(str(ref), query)
        except imaplib.IMAP4.error:
            return None
        if status != "OK" or fetch_data is None:
            return None
        return parse_fetch_body(fetch_data)

    def _cached_raw(self, ref: int) -> bytes | None:
        if self.cached is not None and self.cached[0] == ref:
            return self.cached[1]
        return None

    def fetch_header(self, ref: int) -> str:
        raw = self._cached_raw(ref)
        if raw is not None:
            header, _body = split_raw_message(raw)
            return bytes_to_text(header)
        return bytes_to_text(self._fetch_literal(ref, "(BODY.PEEK[HEADER])") or b"")

    def fetch_structure(self, ref: int) -> MessageStructure | None:
        raw = self._fetch_literal(ref, "(BODY.PEEK[])")
        if not raw:
            return None
        self.cached = (ref, raw)
        return structure_from_message(email.message_from_bytes(raw))

    def fetch_body(self, ref: int, part_path: str | None = None) -> str:
        raw = self._cached_raw(ref)
        if raw is not None:
            if not part_path:
                _header, body = split_raw_message(raw)
                return bytes_to_text(body)
            return bytes_to_text(part_payload(email.message_from_bytes(raw), part_path))
        section = part_path if part_path else "TEXT"
        return bytes_to_text(self._fetch_literal(ref, f"(BODY.PEEK[{section}])") or b"")

    def delete(self, ref: int) -> bool:
        try:
            status, _data = self.imap.store(str(ref), "+FLAGS.SILENT", r"(\Deleted)")
        except imaplib.IMAP4.error:
            return False
        return status == "OK"

    def move(self, ref: int, folder: str) -> bool:
        # Copy then flag, so positions stay valid until the folder is expunged.
        try:
            copy_status, _copy_data = self.imap.copy(str(ref), quote_mailbox_name(folder))
        except imaplib.IMAP4.error:
            return False
        if copy_status != "OK":
            return False
        return self.delete(ref)

    def expunge(self) -> bool:
        self.cached = None
        try:
            status, _data = self.imap.expunge()
        except (imaplib.IMAP4.error, OSError):
            return False
        return status == "OK"

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.cached = None
        try:
            if self.folder is not None:
                self.imap.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        logout_quietly(self.imap)

    def refresh(self) -> None:
        self.cached = None
        if self.folder is None:
            return
        try:
            status, data = self.imap.select(quote_mailbox_name(self.folder), readonly=self.readonly)
        except imaplib.IMAP4.error as error:
            raise MailboxConnectionError(f"Cannot reopen mailbox {self.folder}: {error}") from error
        if status != "OK":
            detail = decode_imap_response(data) or "select failed"
            raise MailboxConnectionError(f"Cannot reopen mailbox {self.folder}: {detail}")
        self.exists = parse_message_count(data)

    def list_folders(self) -> list[FolderInfo]:
        status, data = self.imap.list()
        if status != "OK" or data is None:
            return []
        folders: list[FolderInfo] = []
        for line in data:
            if not line or not isinstance(line, bytes):
                continue
            folder = parse_folder_line(line)
            if folder:
                folders.append(folder)
        return folders

    def create_folder(self, name: str) -> bool:
        try:
            status, _data = self.imap.create(quote_mailbox_name(name))
        except imaplib.IMAP4.error:
            return False
        return status == "OK"

    def count_messages(self, folder: str | None = None) -> int:
        if folder is None or folder == self.folder:
            return self.exists
        status, data = self.imap.status(quote_mailbox_name(folder), "(MESSAGES)")
        if status != "OK":
            return 0
        return parse_message_count(data)

    def sort_by_date(self) -> list[tuple[int, datetime | None]]:
        if not self.exists:
            return []
        status, fetch_data = self.imap.fetch(
            f"1:{self.exists}",
            "(BODY.PEEK[HEADER.FIELDS (DATE)])",
        )
        if status != "OK" or fetch_data is None:
            return []
        entries: list[tuple[int, datetime | None]] = []
        for ref, raw_header in parse_fetch_literals(fetch_data):
            entries.append((ref, parse_header_date(envelope_from_header(bytes_to_text(raw_header)).date)))
        return sort_dated(entries)


# ---------------------------------------------------------------------------
# Local mailbox files
# ---------------------------------------------------------------------------

def is_mbox_file(path: Path) -> bool:
    with path.open("rb") as file:
        head = file.read(5)
    return head == b"" or head == b"From "


class LocalMailStore(MailStore):
    """A local mbox file, or a file holding exactly one RFC 822 message.

    Folders are sibling mbox files in the same directory. Only the mailbox
    file itself and the folders named here or created through a session are
    listed; other files in the directory are not folders of this store.
    """

    def __init__(self, path: Path | str, folders: Iterable[str] = ()) -> None:
        self.path = Path(path)
        self.host = ""
        self.folders = set(folders)

    def describe(self) -> str:
        return str(self.path)

    def folder_path(self, name: str) -> Path:
        return self.path.parent / name

    def open(self, folder: str | None = None, readonly: bool = False) -> "LocalSession":
        path = self.path if folder is None else self.folder_path(folder)
        if not path.is_file():
            raise MailboxConnectionError(f"Cannot open the mailbox file {path}: file not found")
        try:
            return LocalSession(self, path, readonly=readonly)
        except (OSError, mailbox.Error) as error:
            raise MailboxConnectionError(f"Cannot open the mailbox file {path}: {error}") from error


class LocalSession(MailSession):
    def __init__(self, store: LocalMailStore, path: Path, readonly: bool) -> None:
        self.store = store
        self.path = path
        self.folder = path.name
        self.readonly = readonly
        self.is_mbox = False
        self.keys: list[str] = []
        self.raw_messages: list[bytes] = []
        self.deleted: set[int] = set()
        self.closed = False
        self._load()

    def _load(self) -> None:
        self.is_mbox = is_mbox_file(self.path)
        self.keys = []
        self.raw_messages = []
        self.deleted = set()
        if self.is_mbox:
            box = mailbox.mbox(str(self.path), create=False)
            try:
                for key in box.keys():
                    self.keys.append(key)
                    self.raw_messages.append(box.get_bytes(key))
            finally:
                box.close()
        else:
            self.raw_messages.append(self.path.read_bytes())

    def _raw(self, ref: int) -> bytes:
        if ref < 1 or ref > len(self.raw_messages):
            raise IndexError(f"message {ref} out of range")
        return self.raw_messages[ref - 1]

    def _message(self, ref: int) -> Message:
        return email.message_from_bytes(self._raw(ref))

    def fetch_header(self, ref: int) -> str:
        header, _body = split_raw_message(self._raw(ref))
        return bytes_to_text(header)

    def fetch_structure(self, ref: int) -> MessageStructure | None:
        try:
            return structure_from_message(self._message(ref))
        except IndexError:
            return None

    def fetch_body(self, ref: int, part_path: str | None = None) -> str:
        if not part_path:
            _header, body = split_raw_message(self._raw(ref))
            return bytes_to_text(body)
        return bytes_to_text(part_payload(self._message(ref), part_path))

    def delete(self, ref: int) -> bool:
        if self.readonly or ref < 1 or ref > len(self.raw_messages):
            return False
        self.deleted.add(ref)
        return True

    def move(self, ref: int, folder: str) -> bool:
        if self.readonly:
            return False
        target = self.store.folder_path(folder)
        if not target.is_file():
            return False
        try:
            box = mailbox.mbox(str(target), create=False)
            try:
                box.lock()
                box.add(self._raw(ref))
                box.flush()
            finally:
                box.unlock()
                box.close()
        except (OSError, mailbox.Error, IndexError):
            return False
        return self.delete(ref)

    def expunge(self) -> bool:
        if self.readonly or not self.deleted:
            return True
        try:
            if self.is_mbox:
                box = mailbox.mbox(str(self.path), create=False)
                try:
                    box.lock()
                    for ref in sorted(self.deleted):
                        box.discard(self.keys[ref - 1])
                    box.flush()
                finally:
                    box.unlock()
                    box.close()
            else:
                self.path.write_bytes(b"")
        except (OSError, mailbox.Error):
            return False

        kept = [ref for ref in range(1, len(self.raw_messages) + 1) if ref not in self.deleted]
        if self.is_mbox:
            self.keys = [self.keys[ref - 1] for ref in kept]
        self.raw_messages = [self.raw_messages[ref - 1] for ref in kept]
        self.deleted = set()
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self.readonly:
            self.expunge()

    def refresh(self) -> None:
        try:
            self._load()
        except (OSError, mailbox.Error) as error:
            raise MailboxConnectionError(f"Cannot reopen the mailbox file {self.path}: {error}") from error

    def list_folders(self) -> list[FolderInfo]:
        folders = [FolderInfo(name=self.store.path.name, flags=set())]
        for name in sorted(self.store.folders):
            candidate = self.store.folder_path(name)
            if candidate == self.store.path or not candidate.is_file():
                continue
            if is_mbox_file(candidate):
                folders.append(FolderInfo(name=name, flags=set()))
        return folders

    def create_folder(self, name: str) -> bool:
        target = self.store.folder_path(name)
        if target.exists():
            if not target.is_file():
                return False
        else:
            try:
                target.touch()
            except OSError:
                return False
        self.store.folders.add(name)
        return True

    def count_messages(self, folder: str | None = None) -> int:
        if folder is None or folder == self.folder:
            return len(self.raw_messages)
        target = self.store.folder_path(folder)
        if not target.is_file():
            return 0
        box = mailbox.mbox(str(target), create=False)
        try:
            return len(box)
        finally:
            box.close()

    def sort_by_date(self) -> list[tuple[int, datetime | None]]:
        entries = [
            (ref, parse_header_date(self.fetch_envelope(ref).date))
            for ref in range(1, len(self.raw_messages) + 1)
        ]
        return sort_dated(entries)
