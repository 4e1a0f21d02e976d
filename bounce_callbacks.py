"""Ready-made action callbacks for the bounce handler.

Callbacks receive the positional bounce fields in a fixed order; these only
read the leading ones they need.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable


CSV_HEADER = ["Msg#", "Current Time", "Rule Number", "Rule Category", "Bounce Type", "Status", "Email", "Subject"]


@dataclass(frozen=True)
class DisplayData:
    bounce_type: str
    email: str
    email_name: str
    email_address: str
    status: str


def remove_status(remove: object) -> str:
    text = str(remove).lower()
    if "moved" in text and "hard" in text:
        return "moved (hard)"
    if "moved" in text and "soft" in text:
        return "moved (soft)"
    if isinstance(remove, str):
        deleted = remove.strip() not in ("", "0")
    else:
        deleted = bool(remove)
    return "deleted" if deleted else "not deleted"


def prep_data(email_address: str, bounce_type: str, remove: object) -> DisplayData:
    email_name = ""
    address = ""
    if "<" in email_address:
        name_part, _separator, address = email_address.partition("<")
        email_name = name_part.strip()
        address = address.split(">", 1)[0]

    cleaned_email = email_address
    index = cleaned_email.upper().find("TO:<")
    while index != -1:
        cleaned_email = cleaned_email[:index] + cleaned_email[index + 4 :]
        index = cleaned_email.upper().find("TO:<")

    return DisplayData(
        bounce_type=bounce_type.strip() or "none",
        email=cleaned_email,
        email_name=email_name,
        email_address=address,
        status=remove_status(remove),
    )


def echo_callback(
    msgnum: int,
    bounce_type: str,
    email: str,
    subject: str,
    header: object,
    remove: object,
    rule_no: str = "",
    rule_cat: str = "",
) -> bool:
    data = prep_data(email, bounce_type, remove)
    print(f"{msgnum}: {rule_no} | {rule_cat} | {data.bounce_type} | {data.status} | {data.email} | {subject}")
    return True


class CsvCallback:
    """Append one CSV row per bounce to ``bouncelog_MMYYYY.csv`` in a directory."""

    def __init__(self, directory: Path, clock: Callable[[], datetime] = datetime.now, echo: bool = True) -> None:
        self.directory = Path(directory)
        self.clock = clock
        self.echo = echo

    def log_path(self, moment: datetime) -> Path:
        return self.directory / f"bouncelog_{moment:%m%Y}.csv"

    def __call__(
        self,
        msgnum: int,
        bounce_type: str,
        email: str,
        subject: str,
        header: object,
        remove: object,
        rule_no: str = "",
        rule_cat: str = "",
    ) -> bool:
        moment = self.clock()
        data = prep_data(email, bounce_type, remove)
        path = self.log_path(moment)
        self.directory.mkdir(parents=True, exist_ok=True)
        write_header = not path.exists()
        with path.open("a", encoding="utf-8", newline="") as file:
            writer = csv.writer(file)
            if write_header:
                writer.writerow(CSV_HEADER)
            writer.writerow(
                [
                    msgnum,
                    moment.strftime("%Y-%m-%d %H:%M:%S"),
                    rule_no,
                    rule_cat,
                    data.bounce_type,
                    data.status,
                    email,
                    subject,
                ]
            )
        if self.echo:
            echo_callback(msgnum, bounce_type, email, subject, header, remove, rule_no, rule_cat)
        return True
