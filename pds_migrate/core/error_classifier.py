"""Failure classification and recovery advice.

``classify`` prefers an explicit error code and only falls back to matching
the message text. Every pattern is anchored at the start of the message so a
narrow category cannot match inside an unrelated, wrapped message.
"""

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..constants import PLC_OPERATION_SUBMITTED_AT
from ..models.enums import ErrorKind, MigrationStatus, Severity
from ..models.migration import Migration
from .exceptions import MigrationError

# An optional leading exception class name, e.g. "SomeService::NetworkError: "
_CLASS_PREFIX = r"^(?:[\w:.]+Error:\s*)?"

# Checked in order; the PLC and credential messages come first because their
# text can mention tokens, networks or expiry.
MESSAGE_PATTERNS: list[tuple[ErrorKind, re.Pattern]] = [
    (
        ErrorKind.PLC_TOKEN_EXPIRED,
        re.compile(r"^PLC (token has expired|token is missing|confirmation code expired)"),
    ),
    (ErrorKind.PLC_PRE_SUBMISSION_FAILURE, re.compile(r"^PLC update failed \(before submission\)")),
    (ErrorKind.CRITICAL_PLC, re.compile(r"^CRITICAL: PLC update failed")),
    (ErrorKind.CREDENTIALS_NEED_REAUTH, re.compile(r"^Credentials expired:")),
    (
        ErrorKind.RATE_LIMIT,
        re.compile(_CLASS_PREFIX + r"(HTTP 429|rate ?limit|too many requests)", re.IGNORECASE),
    ),
    (
        ErrorKind.NETWORK,
        re.compile(_CLASS_PREFIX + r"(network|connection|timed out|timeout)", re.IGNORECASE),
    ),
    (
        ErrorKind.AUTHENTICATION,
        re.compile(
            _CLASS_PREFIX + r"(authentication failed|HTTP 401|unauthorized|invalid (password|credentials))",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorKind.ACCOUNT_EXISTS,
        re.compile(r"^(account already exists|DID already exists|handle already taken)", re.IGNORECASE),
    ),
    (ErrorKind.INVITE_CODE, re.compile(r"^(invalid|expired) invite code", re.IGNORECASE)),
    (ErrorKind.BLOB_NOT_FOUND, re.compile(r"^blob not found", re.IGNORECASE)),
    (ErrorKind.DATA_CORRUPTION, re.compile(r"^(corrupt|invalid CAR|checksum mismatch)", re.IGNORECASE)),
    (
        ErrorKind.DISK_SPACE,
        re.compile(r"^(disk full|no space left|out of (disk )?space)", re.IGNORECASE),
    ),
    (ErrorKind.CANCELLED, re.compile(r"^migration cancelled", re.IGNORECASE)),
]


class RecoveryAction(Enum):
    """What the user can do about a failure."""

    RETRY_LATER = "retry_later"
    REAUTHENTICATE = "reauthenticate"
    REQUEST_NEW_PLC_TOKEN = "request_new_plc_token"
    CONTACT_SUPPORT = "contact_support"
    START_NEW_MIGRATION = "start_new_migration"


class Advisory(BaseModel):
    """User-facing explanation of a classified failure."""

    kind: ErrorKind
    title: str
    severity: Severity
    actions: list[RecoveryAction] = Field(default_factory=list)
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def show_reauth_form(self) -> bool:
        return RecoveryAction.REAUTHENTICATE in self.actions

    @property
    def show_request_new_plc_token(self) -> bool:
        return RecoveryAction.REQUEST_NEW_PLC_TOKEN in self.actions

    @property
    def show_contact_support(self) -> bool:
        return RecoveryAction.CONTACT_SUPPORT in self.actions

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "severity": self.severity.value,
            "actions": [action.value for action in self.actions],
            "retryable": self.retryable,
            "show_reauth_form": self.show_reauth_form,
            "show_request_new_plc_token": self.show_request_new_plc_token,
            "show_contact_support": self.show_contact_support,
            **self.details,
        }


_A = RecoveryAction

# kind -> (title, severity, actions)
ADVISORIES: dict[ErrorKind, tuple[str, Severity, tuple[RecoveryAction, ...]]] = {
    ErrorKind.PLC_TOKEN_EXPIRED: ("PLC Token Expired", Severity.WARNING, (_A.REQUEST_NEW_PLC_TOKEN,)),
    ErrorKind.PLC_PRE_SUBMISSION_FAILURE: (
        "PLC Update Could Not Complete",
        Severity.WARNING,
        (_A.REQUEST_NEW_PLC_TOKEN,),
    ),
    ErrorKind.CRITICAL_PLC: ("PLC Directory Update Failed", Severity.CRITICAL, (_A.CONTACT_SUPPORT,)),
    ErrorKind.CREDENTIALS_NEED_REAUTH: (
        "Session Expired - Re-authentication Required",
        Severity.WARNING,
        (_A.REAUTHENTICATE,),
    ),
    ErrorKind.AUTHENTICATION: ("Authentication Failed", Severity.ERROR, (_A.REAUTHENTICATE,)),
    ErrorKind.TWO_FACTOR_REQUIRED: (
        "Two-Factor Code Required",
        Severity.WARNING,
        (_A.REAUTHENTICATE,),
    ),
    ErrorKind.NETWORK: ("Network Connection Error", Severity.ERROR, (_A.RETRY_LATER,)),
    ErrorKind.RATE_LIMIT: ("Rate Limited by Server", Severity.WARNING, (_A.RETRY_LATER,)),
    ErrorKind.ACCOUNT_EXISTS: (
        "Account Already Exists on Target PDS",
        Severity.ERROR,
        (_A.CONTACT_SUPPORT,),
    ),
    ErrorKind.INVITE_CODE: (
        "Invalid or Expired Invite Code",
        Severity.ERROR,
        (_A.START_NEW_MIGRATION,),
    ),
    ErrorKind.IDENTITY_MISMATCH: (
        "Account Identity Mismatch",
        Severity.CRITICAL,
        (_A.CONTACT_SUPPORT,),
    ),
    ErrorKind.BLOB_NOT_FOUND: ("Some Blobs Not Found", Severity.WARNING, (_A.CONTACT_SUPPORT,)),
    ErrorKind.DATA_CORRUPTION: (
        "Data Transfer Corruption",
        Severity.ERROR,
        (_A.START_NEW_MIGRATION, _A.CONTACT_SUPPORT),
    ),
    ErrorKind.DISK_SPACE: (
        "Disk Space Exhausted",
        Severity.ERROR,
        (_A.CONTACT_SUPPORT, _A.START_NEW_MIGRATION),
    ),
    ErrorKind.CANCELLED: ("Migration Cancelled", Severity.WARNING, (_A.START_NEW_MIGRATION,)),
    ErrorKind.GENERIC: ("Migration Error", Severity.ERROR, (_A.CONTACT_SUPPORT,)),
}


def detect_error_type(message: str | None) -> ErrorKind:
    """Classify free text by anchored patterns; unknown text is GENERIC."""
    if not message:
        return ErrorKind.GENERIC
    text = message.strip()
    for kind, pattern in MESSAGE_PATTERNS:
        if pattern.match(text):
            return kind
    return ErrorKind.GENERIC


def classify(error: BaseException | str | None, error_code: str | None = None) -> ErrorKind:
    """Classify a failure.

    Args:
        error: The exception or its message
        error_code: Machine-readable code recorded by the failing component; an
            empty or unknown code falls back to message matching

    Returns:
        The error kind
    """
    if error_code:
        try:
            return ErrorKind(error_code)
        except ValueError:
            pass
    if isinstance(error, MigrationError):
        return error.kind
    message = error if isinstance(error, str) or error is None else str(error)
    return detect_error_type(message)


def advise(kind: ErrorKind) -> Advisory:
    title, severity, actions = ADVISORIES[kind]
    if severity is Severity.CRITICAL:
        actions = tuple(a for a in actions if a is not RecoveryAction.REQUEST_NEW_PLC_TOKEN)
    return Advisory(
        kind=kind, title=title, severity=severity, actions=list(actions), retryable=kind.retryable
    )


def explain_error(migration: Migration) -> Advisory | None:
    """Advisory for a failed or cancelled migration, None otherwise."""
    if migration.status not in (MigrationStatus.FAILED, MigrationStatus.CANCELLED):
        return None
    kind = classify(migration.last_error, migration.error_code)
    advisory = advise(kind)
    advisory.details["last_error"] = migration.last_error
    submitted_at = migration.progress_data.get(PLC_OPERATION_SUBMITTED_AT)
    if submitted_at:
        advisory.details["plc_operation_submitted_at"] = submitted_at
    return advisory
