"""
OAuth2 token manager — acquires, stores and refreshes the FreeAgent token.

FreeAgent only offers the authorization-code grant, so the first run needs a
browser: a throwaway HTTP listener on localhost receives the redirect, the
code is exchanged for a token, and the token is written to disk. Every later
run reloads the token file and refreshes it.

Features:
- Local callback server on an ephemeral port
- State parameter checked on the redirect
- Token persisted as YAML, optionally encrypted (Fernet via cryptography)
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import secrets
import socket
import sys
import threading
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from freeagent_api.exceptions import AuthorizationError

logger = logging.getLogger("freeagent_api.auth.oauth2")

# Tokens inside this window before expiry count as expired
_EXPIRY_BUFFER = 300


# ---------------------------------------------------------------------------
# Encryption helpers
# ---------------------------------------------------------------------------

def _get_encryption_key(salt_file: Path) -> bytes:
    """Derive an encryption key from machine-specific data.

    Uses the hostname and a stored random salt, so an encrypted token file
    is only readable on the machine that wrote it.
    """
    if salt_file.exists():
        salt = salt_file.read_bytes()
    else:
        salt = os.urandom(16)
        salt_file.parent.mkdir(parents=True, exist_ok=True)
        salt_file.write_bytes(salt)
        salt_file.chmod(0o600)

    password = socket.gethostname().encode() + b"freeagent-api-v1"

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password))


def _encrypt_data(data: str, salt_file: Path) -> str:
    """Encrypt a string using Fernet (AES-128-CBC + HMAC)."""
    f = Fernet(_get_encryption_key(salt_file))
    return f.encrypt(data.encode()).decode()


def _decrypt_data(encrypted: str, salt_file: Path) -> str:
    """Decrypt a Fernet-encrypted string."""
    f = Fernet(_get_encryption_key(salt_file))
    return f.decrypt(encrypted.encode()).decode()


# ---------------------------------------------------------------------------
# Local callback server
# ---------------------------------------------------------------------------

_PAGE = """<!DOCTYPE html>
<html>
<head><title>FreeAgent - {title}</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 15%;">
  <h1>{title}</h1>
  <p>{message}</p>
</body>
</html>
"""


class _CallbackHTTPServer(HTTPServer):
    """HTTPServer that remembers the query of the OAuth redirect."""

    result: dict[str, str | None] | None = None


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for the OAuth2 redirect."""

    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        if parsed.path != "/":
            # Browsers also ask for /favicon.ico and friends
            self.send_response(404)
            self.end_headers()
            return

        params = parse_qs(parsed.query)
        if "code" in params:
            self.server.result = {
                "code": params["code"][0],
                "state": params.get("state", [None])[0],
            }
            self._send_page(200, "Connected", "You can close this window and return to your terminal.")
        elif "error" in params:
            error = params.get("error_description", params["error"])[0]
            self.server.result = {"error": error}
            self._send_page(400, "Authorization failed", error)
        else:
            self.server.result = {"error": "No authorization code received"}
            self._send_page(400, "Authorization failed", "No authorization code received")

    def _send_page(self, status: int, title: str, message: str) -> None:
        body = _PAGE.format(title=title, message=message).encode()
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("callback: " + format, *args)


class OAuthCallbackServer:
    """Local HTTP server that captures a single OAuth2 redirect.

    Usage::

        server = OAuthCallbackServer()
        server.start()
        redirect_uri = server.redirect_uri
        # ... send the user to the approval URL with redirect_uri ...
        result = await server.wait_for_callback(timeout=300)
        # result = {"code": "...", "state": "..."} or {"error": "..."}
        server.stop()
    """

    def __init__(self, port: int = 0, host: str = "localhost") -> None:
        self.host = host
        self.port = port
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    @property
    def redirect_uri(self) -> str:
        """The redirect URI pointing at this server."""
        return f"http://{self.host}:{self.port}/"

    def start(self) -> None:
        """Bind the socket and serve in a background thread."""
        self._stopping.clear()
        self._server = _CallbackHTTPServer((self.host, self.port), _OAuthCallbackHandler)
        self._server.timeout = 0.2
        # Port 0 asks the OS for a free port
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()
        logger.debug("OAuth callback server listening on %s", self.redirect_uri)

    def _serve(self) -> None:
        server = self._server
        while server is not None and server.result is None and not self._stopping.is_set():
            server.handle_request()

    @property
    def result(self) -> dict[str, str | None] | None:
        return self._server.result if self._server else None

    def stop(self) -> None:
        """Stop serving and release the port."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        if self._server is not None:
            self._server.server_close()
            self._server = None
        logger.debug("OAuth callback server stopped")

    async def wait_for_callback(self, timeout: float = 300) -> dict[str, str | None]:
        """Wait for the redirect to arrive.

        Raises:
            TimeoutError: If no redirect arrives within ``timeout`` seconds.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = self.result
            if result is not None:
                return result
            await asyncio.sleep(0.2)

        raise TimeoutError(f"OAuth callback not received within {timeout}s")


# ---------------------------------------------------------------------------
# Token data and storage
# ---------------------------------------------------------------------------

@dataclass
class TokenData:
    """Holds OAuth2 token data with expiry tracking."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    expires_at: float = 0.0
    scope: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired (with 5-minute buffer)."""
        return time.time() > (self.expires_at - _EXPIRY_BUFFER)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at,
            "scope": self.scope,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenData:
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(data.get("expires_in", 3600)),
            expires_at=float(data.get("expires_at", 0.0)),
            scope=data.get("scope", ""),
            extra=data.get("extra") or {},
        )

    @classmethod
    def from_oauth_response(cls, data: dict[str, Any]) -> TokenData:
        """Parse a standard OAuth2 token response."""
        expires_in = int(data.get("expires_in", 3600))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=time.time() + expires_in,
            scope=data.get("scope", ""),
            extra={k: v for k, v in data.items() if k not in {
                "access_token", "refresh_token", "token_type", "expires_in", "scope",
            }},
        )


class TokenStore:
    """Reads and writes a single token as a YAML document."""

    def __init__(self, path: str | Path, *, encrypt: bool = False, salt_file: Path | None = None) -> None:
        self.path = Path(path)
        self.encrypt = encrypt
        self.salt_file = salt_file or self.path.parent / f".{self.path.name}.salt"

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, token: TokenData) -> None:
        """Write the token to disk, readable by the owner only."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(token.to_dict(), sort_keys=False)
        if self.encrypt:
            content = _encrypt_data(content, self.salt_file)
        self.path.write_text(content)
        self.path.chmod(0o600)
        logger.debug("Saved token to %s", self.path)

    def load(self) -> TokenData | None:
        """Load the token (encrypted or plain), or ``None`` if unavailable."""
        if not self.path.exists():
            return None

        try:
            content = self.path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read token file %s: %s", self.path, e)
            return None
        if self.salt_file.exists():
            try:
                content = _decrypt_data(content, self.salt_file)
            except InvalidToken:
                # Written before encryption was switched on
                logger.debug("Token file %s is not encrypted", self.path)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            logger.warning("Failed to parse token file %s: %s", self.path, e)
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            logger.warning("Token file %s holds no token", self.path)
            return None

        logger.debug("Loaded token from %s", self.path)
        return TokenData.from_dict(data)

    def delete(self) -> bool:
        """Delete the token file.

        Returns:
            True if a file was deleted, False if none existed.
        """
        if self.path.exists():
            self.path.unlink()
            logger.info("Deleted token file %s", self.path)
            return True
        return False


# ---------------------------------------------------------------------------
# Token manager
# ---------------------------------------------------------------------------

def print_approval_url(url: str) -> None:
    print(f"Go and authorize at {url}, waiting...", file=sys.stderr)


class OAuth2TokenManager:
    """Manages the FreeAgent OAuth2 token with refresh and persistent storage.

    Usage::

        manager = OAuth2TokenManager(
            client_id="...",
            client_secret="...",
            authorize_url="https://api.freeagent.com/v2/approve_app",
            token_url="https://api.freeagent.com/v2/token_endpoint",
            store=TokenStore("./.token.yml"),
        )

        # Reload and refresh the stored token, or run the browser flow
        await manager.ensure_token()

        # Get a valid access token (auto-refreshes if expired)
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        authorize_url: str,
        token_url: str,
        store: TokenStore,
        *,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.store = store
        self.timeout = timeout
        self._token: TokenData | None = None
        self._http_client: httpx.AsyncClient | None = None

    @property
    def token(self) -> TokenData | None:
        return self._token

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _request_token(self, payload: dict[str, str]) -> TokenData:
        client = await self._get_client()
        resp = await client.post(
            self.token_url,
            data=payload,
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        return TokenData.from_oauth_response(resp.json())

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> TokenData:
        """Refresh the access token using the refresh token.

        Raises:
            ValueError: If no refresh token is available.
            httpx.HTTPStatusError: If the token endpoint rejects the request.
        """
        if not self._token or not self._token.refresh_token:
            raise ValueError("No refresh token available. Please authorize first.")

        old_refresh = self._token.refresh_token
        logger.debug("Refreshing access token")
        token = await self._request_token({
            "grant_type": "refresh_token",
            "refresh_token": old_refresh,
        })

        # FreeAgent keeps the refresh token unless it rotates it
        if not token.refresh_token:
            token.refresh_token = old_refresh

        self._token = token
        self.store.save(token)
        logger.info("Refreshed access token (expires in %ds)", token.expires_in)
        return token

    async def reload(self) -> TokenData | None:
        """Load the stored token and refresh it.

        Returns ``None`` when there is no usable stored token or the token
        endpoint refuses the refresh, so the caller can fall back to
        :meth:`authorize`.
        """
        stored = self.store.load()
        if stored is None:
            return None

        self._token = stored
        try:
            return await self.refresh()
        except ValueError as e:
            logger.warning("Stored token cannot be refreshed: %s", e)
        except httpx.HTTPStatusError as e:
            logger.warning("Token refresh rejected (%d), re-authorizing", e.response.status_code)
        self._token = None
        return None

    async def get_access_token(self) -> str:
        """Get a valid access token, refreshing if needed."""
        if not self._token:
            stored = self.store.load()
            if stored is None:
                raise ValueError("No token available. Call ensure_token() first.")
            self._token = stored

        if self._token.is_expired:
            await self.refresh()

        return self._token.access_token

    def auth_header(self) -> dict[str, str]:
        """Get the Authorization header for the cached token."""
        if not self._token or not self._token.access_token:
            raise ValueError("No access token available")
        return {"Authorization": f"Bearer {self._token.access_token}"}

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def authorization_url(self, redirect_uri: str, state: str = "") -> str:
        """Build the FreeAgent approval URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
        }
        if state:
            params["state"] = state
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenData:
        """Exchange an authorization code for a token and persist it."""
        token = await self._request_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
        self._token = token
        self.store.save(token)
        logger.info("Exchanged authorization code for a token")
        return token

    async def authorize(
        self,
        *,
        port: int = 0,
        timeout: float = 300,
        open_browser: bool = True,
        notify: Callable[[str], None] | None = print_approval_url,
    ) -> TokenData:
        """Run the interactive browser flow.

        Raises:
            AuthorizationError: If approval is refused, interrupted or
                returns without a code.
            TimeoutError: If the user doesn't approve in time.
        """
        state = secrets.token_urlsafe(32)
        server = OAuthCallbackServer(port=port)
        server.start()

        try:
            redirect_uri = server.redirect_uri
            url = self.authorization_url(redirect_uri, state)
            logger.info("Waiting for approval at %s", url)
            if notify is not None:
                notify(url)
            if open_browser:
                webbrowser.open(url)

            try:
                result = await server.wait_for_callback(timeout=timeout)
            except KeyboardInterrupt as e:
                raise AuthorizationError("Authorization interrupted") from e

            if result.get("error"):
                raise AuthorizationError(f"Authorization failed: {result['error']}")
            if not result.get("code"):
                raise AuthorizationError("No authorization code received")
            if result.get("state") != state:
                raise AuthorizationError("State mismatch in authorization redirect")

            return await self.exchange_code(result["code"], redirect_uri)  # type: ignore[arg-type]
        finally:
            server.stop()

    async def ensure_token(self, **authorize_options: Any) -> TokenData:
        """Reload the stored token, or authorize from scratch, and persist it."""
        token = await self.reload()
        if token is None:
            token = await self.authorize(**authorize_options)
        self.store.save(token)
        return token
