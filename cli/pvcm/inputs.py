"""Mapping/credentials file loading and interactive login prompts."""

from __future__ import annotations

import csv
import getpass
import logging
import os
import sys
from pathlib import Path

from pvcm_common.errors import AuthError, ConfigError
from pvcm_common.session import ClusterCredentials, ClusterSession
from pvcm.migration import DEFAULT_IDENTITY, DEFAULT_PATH, MigrationRequest
from pvcm.transfer import normalize_method

logger = logging.getLogger(__name__)

CREDS_FILENAME = "cluster-creds.csv"

# canonical column -> accepted header spellings (after normalization)
MAPPING_COLUMNS = {
    "source_namespace": ("source_namespace", "sourcenamespace"),
    "dest_namespace": ("dest_namespace", "destnamespace", "destination_namespace"),
    "source_pvc": ("source_pvc", "sourcepvc"),
    "dest_pvc": ("dest_pvc", "destpvc"),
    "source_path": ("source_path", "sourcepath"),
    "dest_path": ("dest_path", "destpath"),
    "method": ("method",),
    "controller_name": ("controller_name", "controllername"),
}
REQUIRED_MAPPING_COLUMNS = ("source_namespace", "dest_namespace")

CREDS_COLUMNS = {
    "label": ("label",),
    "api_url": ("api_url", "apiurl"),
    "token": ("token",),
    "user": ("user",),
    "pass": ("pass",),
    "insecure": ("insecure",),
}

TRUE_VALUES = {"true", "y", "yes", "1", "on"}
FALSE_VALUES = {"false", "n", "no", "0", "off", ""}


def normalize_header(value: str) -> str:
    return value.replace('\ufeff', '').replace('\r', '').replace(' ', '').lower()


def parse_bool(value: str | None) -> bool:
    """Parse true|false|y|n|1|0 (plus yes/no/on/off); empty is False.

    Raises:
        ConfigError: For anything else
    """
    key = (value or "").strip().lower()
    if key in TRUE_VALUES:
        return True
    if key in FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value '{value}' (expected true/false/y/n/1/0)")


def _column_index(header: list[str], aliases: tuple[str, ...]) -> int:
    for alias in aliases:
        if alias in header:
            return header.index(alias)
    return -1


def _read_rows(path: Path) -> list[list[str]]:
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as fh:
            return [row for row in csv.reader(fh)]
    except FileNotFoundError as exc:
        raise ConfigError(f"File not found: {path}") from exc
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc


def _is_data_row(row: list[str]) -> bool:
    text = ",".join(row).strip()
    return bool(text) and not text.startswith("#") and any(cell.strip() for cell in row)


def load_mapping(path: Path) -> MigrationRequest:
    """Load the first data row of the migration mapping CSV.

    Raises:
        ConfigError: If required columns or values are missing
    """
    rows = _read_rows(path)
    if not rows:
        raise ConfigError(f"Mapping file is empty: {path}")

    header = [normalize_header(cell) for cell in rows[0]]
    indices = {name: _column_index(header, aliases) for name, aliases in MAPPING_COLUMNS.items()}

    missing = [name for name in REQUIRED_MAPPING_COLUMNS if indices[name] < 0]
    if missing:
        raise ConfigError(
            f"Missing required column(s) in header: {', '.join(missing)}\n"
            f"Header seen: '{','.join(header)}'\n"
            f"Expected at least: source_namespace, dest_namespace "
            f"[plus optional: {', '.join(n for n in MAPPING_COLUMNS if n not in REQUIRED_MAPPING_COLUMNS)}]"
        )

    data = next((row for row in rows[1:] if _is_data_row(row)), None)
    if data is None:
        raise ConfigError(f"Mapping file has no data row: {path}")

    def field(name: str) -> str:
        idx = indices[name]
        if idx < 0 or idx >= len(data):
            return ""
        return data[idx].strip()

    if not field("source_namespace") or not field("dest_namespace"):
        raise ConfigError(
            f"source_namespace or dest_namespace is empty in the first data row.\nRow: {','.join(data)}"
        )

    request = MigrationRequest(
        source_namespace=field("source_namespace"),
        destination_namespace=field("dest_namespace"),
        source_volume=field("source_pvc") or None,
        destination_volume=field("dest_pvc") or None,
        source_path=field("source_path") or DEFAULT_PATH,
        destination_path=field("dest_path") or DEFAULT_PATH,
        method=normalize_method(field("method")),
        workload_identity=field("controller_name") or DEFAULT_IDENTITY,
    )
    request.validate()
    return request


def load_credentials(path: Path) -> dict[str, ClusterCredentials]:
    """Load source/destination rows from the credentials CSV.

    Returns:
        Dict keyed by ``source`` and/or ``destination``
    """
    rows = _read_rows(path)
    if not rows:
        return {}

    header = [normalize_header(cell) for cell in rows[0]]
    indices = {name: _column_index(header, aliases) for name, aliases in CREDS_COLUMNS.items()}
    if indices["label"] < 0:
        raise ConfigError(f"Credentials file {path} has no 'label' column")

    creds: dict[str, ClusterCredentials] = {}
    for row in rows[1:]:
        if not _is_data_row(row):
            continue

        def field(name: str) -> str:
            idx = indices[name]
            return row[idx].strip() if 0 <= idx < len(row) else ""

        label = field("label").lower()
        if label == "dest":
            label = "destination"
        if label not in ("source", "destination"):
            logger.warning(f"⚠️  Ignoring credentials row with unknown label '{field('label')}'")
            continue

        creds[label] = ClusterCredentials(
            label=label,
            api_url=field("api_url"),
            token=field("token"),
            user=field("user"),
            password=field("pass"),
            insecure=parse_bool(field("insecure")),
        )
    return creds


def resolve_credentials_path(cli_path: str | None, mapping_path: Path) -> Path | None:
    """Credentials file: CLI > PVCM_CREDENTIALS env > cluster-creds.csv beside the mapping."""
    if cli_path:
        return Path(cli_path)
    env_path = os.getenv("PVCM_CREDENTIALS")
    if env_path:
        return Path(env_path)
    sibling = mapping_path.parent / CREDS_FILENAME
    if sibling.is_file():
        return sibling
    return None


def prompt_credentials(label: str) -> ClusterCredentials:
    """Ask for login details on the terminal.

    Raises:
        AuthError: If the user aborts
    """
    while True:
        print(f"=== {label} login ===")
        print("  1) Token")
        print("  2) Username/Password")
        print("  3) Abort")
        choice = input("Choose [1-3]: ").strip()
        if choice == "3":
            raise AuthError(f"Aborted {label} login.")
        if choice not in ("1", "2"):
            print("Invalid choice.")
            continue

        api_url = input("API URL (e.g., https://api.cluster:6443): ").strip()
        creds = ClusterCredentials(label=label, api_url=api_url)
        if choice == "1":
            creds.token = getpass.getpass("Bearer token (hidden): ").strip()
        else:
            creds.user = input("Username: ").strip()
            creds.password = getpass.getpass("Password (hidden): ")
        creds.insecure = input("Skip TLS verify? [y/N]: ").strip().lower() in ("y", "yes")
        return creds


def open_session(
    creds: ClusterCredentials | None,
    label: str,
    context_dir: Path,
    ts: str,
    interactive: bool | None = None
) -> ClusterSession:
    """Open a session from file credentials, falling back to prompts.

    Raises:
        AuthError: If login fails and prompting is not possible or aborted
    """
    if interactive is None:
        interactive = sys.stdin.isatty()

    print(f"Validating {label} cluster login…", file=sys.stderr)
    if creds is not None and creds.is_complete():
        try:
            return ClusterSession.open(creds, context_dir, ts)
        except AuthError as exc:
            logger.warning(f"⚠️  {exc}")
    if not interactive:
        raise AuthError(f"CSV login for {label} failed or incomplete and no terminal is available.")

    print(f"CSV login for {label} failed or incomplete.", file=sys.stderr)
    while True:
        try:
            return ClusterSession.open(prompt_credentials(label), context_dir, ts)
        except AuthError as exc:
            if str(exc).startswith("Aborted"):
                raise
            print(f"Login failed: {exc}", file=sys.stderr)
