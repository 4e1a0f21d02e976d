"""Default bounce classification rules.

Two engines are provided, one for standard delivery-status notifications
(``dsn_rules``) and one for everything else (``body_rules``). Either can be
replaced through the handler configuration; any callable with the same
signature returning a ``ClassificationResult`` (or a mapping with the same
keys) is accepted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from mail_store import MessageStructure


UNRECOGNIZED_RULE_NO = "0000"
UNRECOGNIZED_RULE_CAT = "unrecognized"
EMAIL_PATTERN = re.compile(r"[\w.+'=-]+@[\w-]+(?:\.[\w-]+)+")
IGNORED_ADDRESS_PREFIXES = ("mailer-daemon@", "postmaster@")

# rule category -> (bounce_type, remove)
RULE_CATEGORIES: dict[str, tuple[str, int]] = {
    "antispam": ("blocked", 0),
    "autoreply": ("autoreply", 0),
    "concurrent": ("soft", 0),
    "content_reject": ("soft", 0),
    "command_reject": ("hard", 1),
    "internal_error": ("temporary", 0),
    "defer": ("soft", 0),
    "delayed": ("temporary", 0),
    "dns_loop": ("hard", 1),
    "dns_unknown": ("hard", 1),
    "full": ("soft", 0),
    "inactive": ("hard", 1),
    "latin_only": ("soft", 0),
    "other": ("generic", 1),
    "oversize": ("soft", 0),
    "outofoffice": ("soft", 0),
    "unknown": ("hard", 1),
    "unrecognized": ("", 0),
    "user_reject": ("hard", 1),
    "warning": ("soft", 0),
}


@dataclass
class ClassificationResult:
    email: str = ""
    bounce_type: str = ""
    remove: object = 0
    rule_no: str = UNRECOGNIZED_RULE_NO
    rule_cat: str = UNRECOGNIZED_RULE_CAT
    status_code: str = ""
    action: str = ""
    diagnostic_code: str = ""

    @property
    def matched(self) -> bool:
        return self.rule_no != UNRECOGNIZED_RULE_NO


@dataclass(frozen=True)
class PatternRule:
    rule_no: str
    rule_cat: str
    pattern: re.Pattern[str]


def compile_rules(entries: list[tuple[str, str, str]]) -> tuple[PatternRule, ...]:
    return tuple(
        PatternRule(rule_no=rule_no, rule_cat=rule_cat, pattern=re.compile(pattern, re.IGNORECASE))
        for rule_no, rule_cat, pattern in entries
    )


DIAGNOSTIC_RULES = compile_rules(
    [
        ("0100", "unknown", r"user (?:unknown|not found)|unknown user|no such (?:user|mailbox|recipient)"),
        ("0101", "unknown", r"(?:mailbox|recipient|address) (?:unavailable|does not exist|not found|rejected)"),
        ("0102", "unknown", r"invalid (?:recipient|mailbox|address)|bad destination mailbox"),
        ("0103", "inactive", r"(?:account|mailbox) (?:is )?(?:disabled|inactive|expired|suspended)"),
        ("0104", "full", r"mailbox (?:is )?full|over ?quota|quota exceeded|insufficient (?:disk )?space"),
        ("0105", "oversize", r"message (?:is )?too (?:large|big)|size exceeds|exceeds size limit"),
        ("0106", "dns_unknown", r"host (?:or domain name )?not found|domain (?:does not exist|not found)|no mx record|nxdomain"),
        ("0107", "dns_loop", r"mail (?:for \S+ )?loops back|routing loop"),
        ("0108", "antispam", r"spam|blacklist|blocklist|blocked|listed at|policy reasons"),
        ("0109", "content_reject", r"content (?:rejected|refused)|message content"),
        ("0110", "user_reject", r"refused by (?:the )?recipient|recipient (?:has )?refused"),
        ("0111", "concurrent", r"too many (?:connections|concurrent)"),
        ("0112", "defer", r"try again later|temporar(?:y|ily)|greylist"),
        ("0113", "internal_error", r"internal (?:server )?error|local error in processing"),
    ]
)

# DSN status code prefixes, most specific first.
STATUS_RULES: tuple[tuple[str, str, str], ...] = (
    ("5.1.1", "0150", "unknown"),
    ("5.1.2", "0151", "dns_unknown"),
    ("5.1.", "0152", "unknown"),
    ("5.2.1", "0153", "inactive"),
    ("5.2.2", "0154", "full"),
    ("5.2.3", "0155", "oversize"),
    ("5.4.6", "0156", "dns_loop"),
    ("5.4.", "0157", "dns_unknown"),
    ("5.7.", "0158", "antispam"),
    ("4.2.2", "0159", "full"),
    ("4.", "0160", "defer"),
)

BODY_RULES = compile_rules(
    [
        ("0200", "autoreply", r"auto(?:matic)?[ -]?(?:reply|response)|autoreply"),
        ("0201", "outofoffice", r"out of (?:the )?office|on vacation|away from (?:the|my) office"),
        ("0202", "unknown", r"user (?:unknown|not found)|unknown user|no such (?:user|mailbox|recipient)"),
        ("0203", "unknown", r"(?:mailbox|recipient|address) (?:unavailable|does not exist|not found)"),
        ("0204", "unknown", r"invalid (?:recipient|mailbox)|bad destination mailbox"),
        ("0205", "inactive", r"(?:account|mailbox) (?:is )?(?:disabled|inactive|expired|suspended)"),
        ("0206", "full", r"mailbox (?:is )?full|over ?quota|quota exceeded"),
        ("0207", "oversize", r"message (?:is )?too (?:large|big)|exceeds size limit"),
        ("0208", "dns_unknown", r"host (?:or domain name )?not found|domain (?:does not exist|not found)"),
        ("0209", "antispam", r"blocked|blacklist|rejected as spam|spam detected"),
        ("0210", "delayed", r"(?:delivery|message) (?:has been |is )?delayed|will (?:continue|keep) trying"),
        ("0211", "latin_only", r"latin(?:-1)? (?:characters )?only"),
    ]
)


def new_result(rule_no: str, rule_cat: str, **fields: str) -> ClassificationResult:
    bounce_type, remove = RULE_CATEGORIES.get(rule_cat, ("", 0))
    return ClassificationResult(
        bounce_type=bounce_type,
        remove=remove,
        rule_no=rule_no,
        rule_cat=rule_cat,
        **fields,
    )


def extract_email(text: str) -> str:
    for match in EMAIL_PATTERN.finditer(text):
        address = match.group(0).strip(".")
        if not address.lower().startswith(IGNORED_ADDRESS_PREFIXES):
            return address
    return ""


def parse_report_fields(report: str) -> dict[str, str]:
    """Parse delivery-status fields, keeping the first value of each name.

    Folded continuation lines are joined onto the field they belong to.
    """
    fields: dict[str, str] = {}
    current = ""
    for line in report.replace("\r\n", "\n").split("\n"):
        if line[:1] in (" ", "\t") and current:
            fields[current] = f"{fields[current]} {line.strip()}"
            continue
        name, separator, value = line.partition(":")
        if not separator or not name.strip() or " " in name.strip():
            current = ""
            continue
        key = name.strip().lower()
        if key in fields:
            current = ""
            continue
        fields[key] = value.strip()
        current = key
    return fields


def recipient_address(field_value: str) -> str:
    # "rfc822; user@example.test"
    _address_type, separator, address = field_value.partition(";")
    if not separator:
        address = field_value
    return address.strip().strip("<>")


def match_pattern_rules(rules: tuple[PatternRule, ...], text: str) -> PatternRule | None:
    for rule in rules:
        if rule.pattern.search(text):
            return rule
    return None


def dsn_rules(dsn_msg: str, dsn_report: str, debug: bool = False) -> ClassificationResult:
    fields = parse_report_fields(dsn_report)
    email_address = recipient_address(
        fields.get("final-recipient") or fields.get("original-recipient") or ""
    )
    action = fields.get("action", "").lower()
    status_code = fields.get("status", "")
    diagnostic_code = fields.get("diagnostic-code", "")
    details = {
        "email": email_address or extract_email(dsn_msg),
        "status_code": status_code,
        "action": action,
        "diagnostic_code": diagnostic_code,
    }

    if action == "failed":
        rule = match_pattern_rules(DIAGNOSTIC_RULES, diagnostic_code) or match_pattern_rules(
            DIAGNOSTIC_RULES,
            dsn_msg,
        )
        if rule:
            return new_result(rule.rule_no, rule.rule_cat, **details)
        for prefix, rule_no, rule_cat in STATUS_RULES:
            if status_code.startswith(prefix):
                return new_result(rule_no, rule_cat, **details)
    elif action == "delayed":
        return new_result("0170", "delayed", **details)

    if debug:
        print(f"DSN rules: no match (action={action!r}, status={status_code!r}, diagnostic={diagnostic_code!r})")
    return new_result(UNRECOGNIZED_RULE_NO, UNRECOGNIZED_RULE_CAT, **details)


def body_rules(body: str, structure: MessageStructure | None, debug: bool = False) -> ClassificationResult:
    rule = match_pattern_rules(BODY_RULES, body)
    email_address = extract_email(body)
    if rule:
        return new_result(rule.rule_no, rule.rule_cat, email=email_address)

    if debug:
        kind = structure.kind if structure is not None else "unknown"
        print(f"Body rules: no match ({kind} body, {len(body)} chars)")
    return new_result(UNRECOGNIZED_RULE_NO, UNRECOGNIZED_RULE_CAT, email=email_address)
