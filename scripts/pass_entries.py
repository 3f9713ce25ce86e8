"""
Turn decrypted pass entries into Bitwarden login records.

A pass entry is the password on its first line, optionally followed by a
"--"/"---" separator and a YAML mapping of extra fields.
"""

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

SECRET_SUFFIX = ".gpg"
ROOT_FOLDER = "/"
SEPARATORS = ("--", "---")

TYPE_LOGIN = "login"
TYPE_TOTP = "totp"

# Bitwarden CSV import columns, in order.
FIELD_NAMES: List[str] = [
    "folder",
    "favorite",
    "type",
    "name",
    "notes",
    "fields",
    "login_uri",
    "login_username",
    "login_password",
    "login_totp",
]


class FieldsParseError(ValueError):
    """The metadata block of an entry is not a flat mapping."""


@dataclass(frozen=True)
class CredentialRecord:
    folder: str
    name: str
    type: str = TYPE_LOGIN
    favorite: int = 0
    notes: str = ""
    fields: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    login_uri: str = ""
    login_username: str = ""
    login_password: str = ""
    login_totp: str = ""


def _pop(fields: Dict[str, str], key: str) -> str:
    return fields.pop(key, "")


def parse_fields(text: str, source: str = "", dropped: Optional[List[str]] = None) -> Dict[str, str]:
    """Parse the metadata block as a flat string mapping.

    BaseLoader keeps every scalar as written, so "010" or "yes" are not coerced.
    Nested values are dropped with a warning and their keys appended to
    `dropped` when given; anything that is not a mapping at
    the top level raises FieldsParseError.
    """
    try:
        doc = yaml.load(text, Loader=yaml.BaseLoader)
    except yaml.YAMLError as exc:
        # str(exc) quotes the offending text, which may hold secrets
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}" if mark is not None else ""
        problem = getattr(exc, "problem", None) or "parse error"
        raise FieldsParseError(f"invalid YAML{where}: {problem}") from exc
    if doc is None or doc == "":
        return {}
    if not isinstance(doc, dict):
        raise FieldsParseError(f"expected key: value lines, got {type(doc).__name__}")

    fields: Dict[str, str] = {}
    for key, value in doc.items():
        if isinstance(value, (dict, list)):
            logger.warning("Skipping nested field %r in %s", key, source)
            if dropped is not None:
                dropped.append(str(key))
            continue
        fields[str(key)] = "" if value is None else str(value)
    return fields


def _split_folder(fname: str):
    folder, name = os.path.split(fname)
    folder = folder.replace(os.sep, "/").strip("/")
    return folder or ROOT_FOLDER, name


def build_record(
    fname: str,
    plaintext: bytes,
    on_parse_error: Optional[Callable[[str, Exception], None]] = None,
) -> CredentialRecord:
    """Build a record for `fname` (path relative to the store root).

    A metadata block that fails to parse is logged and reported through
    `on_parse_error`; the record is still built, just without extra fields.
    """
    lines = plaintext.decode("utf-8", errors="replace").split("\n")
    password = lines[0]

    content = lines[1:]
    if len(lines) > 1 and lines[1] in SEPARATORS:
        content = lines[2:]

    dropped: List[str] = []
    try:
        fields = parse_fields("\n".join(content), source=fname, dropped=dropped)
    except FieldsParseError as exc:
        logger.warning("Could not parse content of password %s: %s", fname, exc)
        if on_parse_error is not None:
            on_parse_error(fname, exc)
        fields = {}
    if dropped and on_parse_error is not None:
        on_parse_error(fname, FieldsParseError(f"nested values dropped for: {', '.join(dropped)}"))

    username = fields["login"] if "login" in fields else fields.get("username", "")
    _pop(fields, "login")
    _pop(fields, "username")

    url = _pop(fields, "url")
    if url:
        _pop(fields, "http")
    else:
        url = _pop(fields, "http")

    totp = _pop(fields, "totp")

    folder, name = _split_folder(fname)
    if name.endswith(SECRET_SUFFIX):
        name = name[: -len(SECRET_SUFFIX)]

    return CredentialRecord(
        folder=folder,
        name=name,
        type=TYPE_TOTP if totp else TYPE_LOGIN,
        fields=MappingProxyType(fields),
        login_uri=url,
        login_username=username,
        login_password=password,
        login_totp=totp,
    )


def format_fields(fields: Mapping[str, str]) -> str:
    return "\n".join(f"{key}: {value}" for key, value in fields.items())


def record_to_dict(record: CredentialRecord) -> dict:
    """Row dict keyed by FIELD_NAMES, ready for csv.DictWriter."""
    return {
        "folder": record.folder,
        "favorite": record.favorite,
        "type": record.type,
        "name": record.name,
        "notes": record.notes,
        "fields": format_fields(record.fields),
        "login_uri": record.login_uri,
        "login_username": record.login_username,
        "login_password": record.login_password,
        "login_totp": record.login_totp,
    }


__all__ = [
    "CredentialRecord",
    "FIELD_NAMES",
    "FieldsParseError",
    "build_record",
    "format_fields",
    "parse_fields",
    "record_to_dict",
]
