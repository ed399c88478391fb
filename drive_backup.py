#!/usr/bin/env python3
"""
Google Drive versioned backup.

Uploads a local file to Google Drive under a backup name. Files sharing the
backup's base name form a lineage (``report.txt``, ``report__1.txt``, ...);
each run either starts the lineage, appends the next version or overwrites
the latest one in place.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import drive_auth
import name_version
from drive_auth import (
    DEFAULT_CREDENTIALS_PATH,
    DEFAULT_TOKENS_PATH,
    AuthorizationError,
    AuthorizedClientCache,
    CodeProvider,
    CredentialsError,
    InteractiveCodeProvider,
    StaticCodeProvider,
    TokenStore,
)


CONFIG_SECTION = "backup"
DEFAULT_PAGE_SIZE = 100
RECORD_FIELDS = "id, name"
NOISY_LOGGERS = (
    "googleapiclient",
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "google_auth_oauthlib",
    "urllib3",
)

ACTION_CREATE = "create"
ACTION_CREATE_VERSION = "create_version"
ACTION_UPDATE = "update"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class ValidationError(Exception):
    """Raised when a backup request is rejected before any network call."""


class ProviderError(Exception):
    """Raised when a Google Drive list, create or update call fails."""


@dataclass(frozen=True)
class DriveFileRef:
    file_id: str
    name: str


@dataclass
class BackupRequest:
    backup_file_name: str
    source_file_name: str
    credentials_path: Path = DEFAULT_CREDENTIALS_PATH
    tokens_path: Path = DEFAULT_TOKENS_PATH
    increment_version: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    dry_run: bool = False


@dataclass
class BackupPlan:
    action: str
    name: str
    file_id: Optional[str] = None
    latest: Optional[DriveFileRef] = None


@dataclass
class BackupConfig:
    request: BackupRequest
    auth_code: Optional[str] = None


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Back up a file to Google Drive, keeping numbered versions."
    )
    parser.add_argument(
        "backup_name_arg",
        nargs="?",
        metavar="BACKUP_NAME",
        help="Name of the backup file in Google Drive (e.g. report.txt).",
    )
    parser.add_argument(
        "source_arg",
        nargs="?",
        metavar="SOURCE",
        help="Local file to upload.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument(
        "--backup-name",
        help="Same as BACKUP_NAME.",
    )
    parser.add_argument(
        "--source",
        help="Same as SOURCE.",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        help="Path to the OAuth client secrets JSON file (default: credentials.json).",
    )
    parser.add_argument(
        "--tokens",
        type=Path,
        help="Path to the cached token file (default: tokens.json).",
    )
    parser.add_argument(
        "--increment-version",
        dest="increment_version",
        action="store_true",
        help="Upload as a new numbered version instead of overwriting the latest one.",
    )
    parser.add_argument(
        "--no-increment-version",
        dest="increment_version",
        action="store_false",
        help=argparse.SUPPRESS,
    )
    parser.set_defaults(increment_version=None)
    parser.add_argument(
        "--page-size",
        type=int,
        help="Number of Drive files requested per listing page (default: 100).",
    )
    parser.add_argument(
        "--auth-code",
        help=(
            "Authorization code obtained from the consent page. When given, "
            "authorization does not prompt on the terminal."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the planned action without uploading anything.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> BackupConfig:
    file_cfg = file_config or {}

    backup_name = args.backup_name_arg or args.backup_name or file_cfg.get("backup_name")
    source = args.source_arg or args.source or file_cfg.get("source")

    if not backup_name:
        raise ConfigurationError("backup_name must be supplied via CLI or config file.")
    if not source:
        raise ConfigurationError("source must be supplied via CLI or config file.")

    increment_value = file_cfg.get("increment_version")
    if args.increment_version is not None:
        increment_version = args.increment_version
    elif increment_value is not None:
        increment_version = parse_bool(increment_value)
    else:
        increment_version = False

    page_size: int
    if args.page_size is not None:
        page_size = args.page_size
    elif "page_size" in file_cfg:
        page_size = parse_int(file_cfg["page_size"], "page_size")
    else:
        page_size = DEFAULT_PAGE_SIZE

    if page_size <= 0:
        raise ConfigurationError("page_size must be a positive integer.")

    credentials_path = _resolve_path(
        args.credentials, file_cfg.get("credentials"), DEFAULT_CREDENTIALS_PATH
    )
    tokens_path = _resolve_path(args.tokens, file_cfg.get("tokens"), DEFAULT_TOKENS_PATH)

    request = BackupRequest(
        backup_file_name=backup_name,
        source_file_name=source,
        credentials_path=credentials_path,
        tokens_path=tokens_path,
        increment_version=increment_version,
        page_size=page_size,
        dry_run=args.dry_run,
    )
    return BackupConfig(request=request, auth_code=args.auth_code)


def _resolve_path(
    cli_value: Optional[Path], file_value: Optional[str], default: Path
) -> Path:
    value: Union[Path, str]
    if cli_value is not None:
        value = cli_value
    elif file_value:
        value = file_value
    else:
        value = default
    return Path(value).expanduser().resolve()


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def validate_request(request: BackupRequest) -> None:
    for field_name in ("backup_file_name", "source_file_name"):
        value = getattr(request, field_name)
        if not isinstance(value, str) or not value:
            raise ValidationError(f"{field_name} should be a string of non-zero length.")

    page_size = request.page_size
    if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
        raise ValidationError("page_size should be a positive integer.")

    if not Path(request.source_file_name).is_file():
        raise ValidationError(
            f"source_file_name {request.source_file_name} is not an existing file."
        )


def create_gdrive_service(credentials):
    try:
        from googleapiclient.discovery import build  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-api-python-client is required for Google Drive operations. "
            "Install with `pip install google-api-python-client google-auth`."
        ) from exc

    _quiet_external_loggers()
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


def _media_upload(source_path: Union[Path, str]):
    try:
        from googleapiclient.http import MediaFileUpload  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-api-python-client is required for Google Drive uploads. "
            "Install with `pip install google-api-python-client`."
        ) from exc

    return MediaFileUpload(str(source_path), resumable=False)


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveStorage:
    """Thin wrapper over the Drive v3 ``files`` resource."""

    def __init__(self, service) -> None:
        self.service = service

    def list_page(
        self, *, name_contains: str, page_size: int, page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        query = f"name contains '{_escape_query_value(name_contains)}' and trashed = false"
        try:
            return (
                self.service.files()
                .list(
                    q=query,
                    spaces="drive",
                    pageSize=page_size,
                    fields=f"nextPageToken, files({RECORD_FIELDS})",
                    pageToken=page_token,
                )
                .execute()
            )
        except Exception as error:
            raise ProviderError(f"Failed to list Google Drive files: {error}") from error

    def list_all(self, name_contains: str, *, page_size: int) -> List[DriveFileRef]:
        files: List[DriveFileRef] = []
        page_token: Optional[str] = None

        while True:
            response = self.list_page(
                name_contains=name_contains, page_size=page_size, page_token=page_token
            )
            page = response.get("files", [])
            logging.debug(
                "Fetched %d Google Drive file(s) matching '%s'", len(page), name_contains
            )
            for file_info in page:
                files.append(DriveFileRef(file_id=file_info["id"], name=file_info["name"]))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return files

    def create(self, name: str, source_path: Union[Path, str]) -> Dict[str, Any]:
        media = _media_upload(source_path)
        try:
            return (
                self.service.files()
                .create(body={"name": name}, media_body=media, fields=RECORD_FIELDS)
                .execute()
            )
        except Exception as error:
            raise ProviderError(f"Failed to create {name} in Google Drive: {error}") from error

    def update(self, file_id: str, name: str, source_path: Union[Path, str]) -> Dict[str, Any]:
        media = _media_upload(source_path)
        try:
            return (
                self.service.files()
                .update(
                    fileId=file_id,
                    body={"name": name},
                    media_body=media,
                    fields=RECORD_FIELDS,
                )
                .execute()
            )
        except Exception as error:
            raise ProviderError(f"Failed to update {name} in Google Drive: {error}") from error


def filter_lineage(files: Iterable[DriveFileRef], backup_file_name: str) -> List[DriveFileRef]:
    """Keep the files whose base name equals the base name of ``backup_file_name``.

    Drive's ``name contains`` query also returns unrelated names such as
    ``reporting.txt`` for ``report``.
    """
    target = name_version.parse(backup_file_name)
    lineage: List[DriveFileRef] = []
    for file_ref in files:
        if name_version.parse(file_ref.name).base_name == target.base_name:
            lineage.append(file_ref)
        else:
            logging.debug("Skipping %s, not part of the %s lineage", file_ref.name, target.base_name)
    return lineage


def select_latest(files: List[DriveFileRef]) -> DriveFileRef:
    # Equal versions keep the earliest file.
    if not files:
        raise ValueError("select_latest requires at least one file.")
    latest = files[0]
    latest_version = name_version.parse(latest.name).version
    for candidate in files[1:]:
        version = name_version.parse(candidate.name).version
        if latest_version < version:
            latest, latest_version = candidate, version
    return latest


def plan_backup(
    backup_file_name: str, lineage: List[DriveFileRef], *, increment_version: bool
) -> BackupPlan:
    if not lineage:
        return BackupPlan(action=ACTION_CREATE, name=backup_file_name)

    latest = select_latest(lineage)
    if increment_version:
        base_name, version = name_version.parse(latest.name)
        _, extension = name_version.split_extension(latest.name)
        return BackupPlan(
            action=ACTION_CREATE_VERSION,
            name=name_version.render(base_name, version + 1, extension),
            latest=latest,
        )

    return BackupPlan(
        action=ACTION_UPDATE, name=latest.name, file_id=latest.file_id, latest=latest
    )


def apply_plan(
    storage: DriveStorage, plan: BackupPlan, source_path: Union[Path, str]
) -> Dict[str, Any]:
    if plan.action in (ACTION_CREATE, ACTION_CREATE_VERSION):
        return storage.create(plan.name, source_path)
    if plan.action == ACTION_UPDATE:
        if plan.file_id is None:
            raise ValueError("Update plans require a file id.")
        return storage.update(plan.file_id, plan.name, source_path)
    raise ValueError(f"Unsupported backup action: {plan.action}")


def describe_plan(plan: BackupPlan) -> str:
    if plan.action == ACTION_CREATE:
        return f"create new backup {plan.name}"
    if plan.action == ACTION_CREATE_VERSION:
        previous = plan.latest.name if plan.latest else "?"
        return f"create version {plan.name} after {previous}"
    return f"overwrite {plan.name} (id {plan.file_id})"


def get_credentials(
    request: BackupRequest,
    *,
    client_cache: AuthorizedClientCache,
    code_provider: CodeProvider,
):
    key = str(request.credentials_path)
    return client_cache.get_or_create(
        key,
        lambda: drive_auth.authorize(
            request.credentials_path,
            token_store=TokenStore(request.tokens_path),
            code_provider=code_provider,
        ),
    )


def backup_file(
    request: BackupRequest,
    *,
    client_cache: Optional[AuthorizedClientCache] = None,
    code_provider: Optional[CodeProvider] = None,
) -> Optional[Dict[str, Any]]:
    """Upload ``request.source_file_name`` into the lineage of ``request.backup_file_name``.

    Returns the Drive file resource produced by the create or update call, or
    ``None`` for a dry run.

    Authorized credentials are reused only through ``client_cache``. Without
    one, each call builds a fresh cache and authorizes again, so callers making
    repeated backups should pass the same cache every time.
    """
    validate_request(request)

    if client_cache is None:
        client_cache = AuthorizedClientCache()
    if code_provider is None:
        code_provider = InteractiveCodeProvider()

    credentials = get_credentials(
        request, client_cache=client_cache, code_provider=code_provider
    )
    storage = DriveStorage(create_gdrive_service(credentials))

    query_term, _ = name_version.split_extension(request.backup_file_name)
    candidates = storage.list_all(query_term, page_size=request.page_size)
    lineage = filter_lineage(candidates, request.backup_file_name)
    logging.debug(
        "Found %d candidate(s), %d in lineage of %s",
        len(candidates),
        len(lineage),
        request.backup_file_name,
    )

    plan = plan_backup(
        request.backup_file_name, lineage, increment_version=request.increment_version
    )

    if request.dry_run:
        logging.info("Would %s", describe_plan(plan))
        return None

    logging.info("Uploading %s: %s", request.source_file_name, describe_plan(plan))
    return apply_plan(storage, plan, request.source_file_name)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    code_provider: CodeProvider
    if config.auth_code:
        code_provider = StaticCodeProvider(config.auth_code)
    else:
        code_provider = InteractiveCodeProvider()

    request = config.request
    try:
        result = backup_file(
            request,
            client_cache=AuthorizedClientCache(),
            code_provider=code_provider,
        )
    except ValidationError as error:
        logging.error("%s", error)
        return 2
    except (CredentialsError, AuthorizationError, ProviderError, RuntimeError) as error:
        logging.error("Failed to back up %s: %s", request.source_file_name, error)
        return 1

    if result is not None:
        logging.info(
            "Backup of %s stored as %s (id %s)",
            request.source_file_name,
            result.get("name", request.backup_file_name),
            result.get("id"),
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
