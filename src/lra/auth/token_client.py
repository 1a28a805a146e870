"""
SMART backend-services token client.

Signs an RS384 client assertion with the app's private key and trades it for an
access token with a client_credentials grant. One token is assumed to outlive a
run, so nothing is cached or refreshed.
"""
from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import jwt
from loguru import logger

from lra.common.config import AuthSettings
from lra.common.errors import ConfigurationError, TokenRequestError
from lra.common.http import Transport


CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_TTL_S = 300


def load_private_key(path: str) -> str:
    try:
        key = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read private key at {path}: {e}", {"path": path})

    if "BEGIN RSA PRIVATE KEY" not in key and "BEGIN PRIVATE KEY" not in key:
        logger.warning(f"{path} does not look like a private key")
    return key


class BackendTokenClient:
    def __init__(
        self,
        settings: AuthSettings,
        transport: Transport,
        *,
        private_key: Optional[str] = None,
        now: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.transport = transport
        self.private_key = private_key if private_key is not None else load_private_key(settings.private_key_path)
        self.now = now

    def build_client_assertion(self) -> str:
        issued = int(self.now())
        claims = {
            "iss": self.settings.client_id,
            "sub": self.settings.client_id,
            "aud": self.settings.token_url,
            "jti": str(uuid.uuid4()),
            "iat": issued,
            "nbf": issued,
            "exp": issued + ASSERTION_TTL_S,
        }
        headers: Dict[str, Any] = {"typ": "JWT"}
        if self.settings.key_id:
            headers["kid"] = self.settings.key_id
        return jwt.encode(claims, self.private_key, algorithm="RS384", headers=headers)

    def get_token(self) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self.build_client_assertion(),
            "scope": self.settings.scope,
        }
        logger.info(f"Requesting access token from {self.settings.token_url}")
        res = self.transport.post_form(self.settings.token_url, form, {"Accept": "application/json"})

        text = res.text()
        try:
            body = json.loads(text)
        except ValueError:
            raise TokenRequestError(f"Token endpoint returned non-JSON ({res.status})", status=res.status, body=text)

        if not 200 <= res.status < 300:
            raise TokenRequestError(f"Token request failed ({res.status})", status=res.status, body=text)
        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise TokenRequestError("Token response missing access_token", status=res.status, body=text)

        logger.info("Access token acquired")
        return token

    __call__ = get_token
