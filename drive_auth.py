"""
Google Drive authorization for the backup tool.

Reads an OAuth client secrets file, reuses tokens cached on disk (keyed by the
client secrets path) and falls back to the installed-app code exchange the
first time a credential source is used.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union


SCOPES = ["https://www.googleapis.com/auth/drive.file"]
DEFAULT_CREDENTIALS_PATH = Path("credentials.json")
DEFAULT_TOKENS_PATH = Path("tokens.json")

_CLIENT_SECTIONS = ("installed", "web")
_REQUIRED_CLIENT_FIELDS = ("client_id", "client_secret", "redirect_uris")


class CredentialsError(Exception):
    """Raised when the OAuth client secrets file is missing or malformed."""


class AuthorizationError(Exception):
    """Raised when the authorization code cannot be exchanged for a token."""


def load_credentials(credentials_path: Union[Path, str]) -> Dict[str, Any]:
    """Return the client config for ``credentials_path`` with its single client section."""
    path = Path(credentials_path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as error:
        raise CredentialsError(f"Error loading credentials from {path}: {error}") from error

    try:
        bundle = json.loads(content)
    except ValueError as error:
        raise CredentialsError(f"Credentials file {path} is not valid JSON.") from error

    if not isinstance(bundle, dict):
        raise CredentialsError(f"Credentials file {path} must contain a JSON object.")

    section = next((name for name in _CLIENT_SECTIONS if name in bundle), None)
    if section is None:
        raise CredentialsError(
            f"Credentials file {path} has no 'installed' or 'web' client section."
        )

    client = bundle[section]
    missing = [name for name in _REQUIRED_CLIENT_FIELDS if not client.get(name)]
    if missing:
        raise CredentialsError(
            f"Credentials file {path} is missing {', '.join(missing)}."
        )
    return {section: client}


class TokenStore:
    """JSON file mapping a credentials path to its serialized OAuth token."""

    def __init__(self, path: Union[Path, str] = DEFAULT_TOKENS_PATH) -> None:
        self.path = Path(path)

    def load_all(self) -> Dict[str, Any]:
        try:
            tokens = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        if not isinstance(tokens, dict):
            return {}
        return tokens

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self.load_all().get(key) or None

    def save(self, key: str, token: Dict[str, Any]) -> None:
        tokens = self.load_all()
        tokens[key] = token
        self.path.write_text(json.dumps(tokens), encoding="utf-8")
        logging.debug("Stored token for %s in %s", key, self.path)


class CodeProvider:
    """Supplies the one-time authorization code for a consent URL."""

    def get_code(self, authorization_url: str) -> str:
        raise NotImplementedError


class InteractiveCodeProvider(CodeProvider):
    def __init__(
        self,
        *,
        prompt: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self._prompt = prompt
        self._output = output

    def get_code(self, authorization_url: str) -> str:
        self._output(f"Authorize this app by visiting this url: {authorization_url}")
        return self._prompt("Enter the code from that page here: ").strip()


class StaticCodeProvider(CodeProvider):
    """Returns a code obtained out of band, for unattended runs."""

    def __init__(self, code: str) -> None:
        self._code = code.strip() if code else ""

    def get_code(self, authorization_url: str) -> str:
        if not self._code:
            raise AuthorizationError(
                "No authorization code was supplied; visit "
                f"{authorization_url} and pass the code with --auth-code."
            )
        return self._code


class AuthorizedClientCache:
    """Authorized credentials keyed by credential source.

    Concurrent misses may both authorize; the last stored handle wins.
    """

    def __init__(self) -> None:
        self._clients: Dict[str, Any] = {}

    def get_or_create(self, key: str, factory: Callable[[], Any]) -> Any:
        client = self._clients.get(key)
        if client is not None:
            logging.debug("Reusing authorized client for %s", key)
            return client
        client = factory()
        self._clients[key] = client
        return client


def _create_flow(client_config: Dict[str, Any], redirect_uri: str):
    try:
        from google_auth_oauthlib.flow import Flow  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-auth-oauthlib is required for Google Drive authorization. "
            "Install with `pip install google-auth-oauthlib`."
        ) from exc
    return Flow.from_client_config(client_config, scopes=SCOPES, redirect_uri=redirect_uri)


def _credentials_from_token(token: Dict[str, Any]):
    try:
        from google.oauth2.credentials import Credentials  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-auth is required for Google Drive authorization. "
            "Install with `pip install google-auth`."
        ) from exc
    return Credentials.from_authorized_user_info(token, SCOPES)


def exchange_code(bundle: Dict[str, Any], code_provider: CodeProvider):
    client = next(iter(bundle.values()))
    flow = _create_flow(bundle, client["redirect_uris"][0])
    authorization_url, _ = flow.authorization_url(access_type="offline")

    code = code_provider.get_code(authorization_url)
    if not code:
        raise AuthorizationError("Authorization code must not be empty.")

    try:
        flow.fetch_token(code=code)
    except Exception as error:
        raise AuthorizationError(f"Error retrieving access token: {error}") from error
    return flow.credentials


def authorize(
    credentials_path: Union[Path, str],
    *,
    token_store: TokenStore,
    code_provider: CodeProvider,
):
    """Return Drive credentials for ``credentials_path``.

    Uses the token cached in ``token_store`` when there is one, otherwise asks
    ``code_provider`` for an authorization code and caches the new token.
    """
    key = str(credentials_path)
    bundle = load_credentials(credentials_path)

    token = token_store.get(key)
    if token:
        try:
            credentials = _credentials_from_token(token)
        except ValueError as error:
            logging.warning("Ignoring unusable cached token for %s: %s", key, error)
        else:
            logging.debug("Using cached token for %s", key)
            return credentials

    logging.info("No cached token for %s, starting authorization", key)
    credentials = exchange_code(bundle, code_provider)
    token_store.save(key, json.loads(credentials.to_json()))
    return credentials
