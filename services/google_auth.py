# calmirror/services/google_auth.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from google.oauth2.credentials import Credentials

from core.settings import GOOGLE


logger = logging.getLogger("calmirror.google")


class GoogleAuth:
    """Loads an already authorized Google token.

    Consent and token refresh belong to whoever writes the token file; this class
    only hands the stored credentials to the calendar client.
    """

    def __init__(
        self,
        token_path: str | Path = GOOGLE.token_path,
        scopes: Iterable[str] = GOOGLE.scopes,
    ):
        self.token_path = Path(token_path)
        self.scopes = list(scopes)
        self.creds: Optional[Credentials] = None

    def load_credentials(self) -> Optional[Credentials]:
        if self.creds is not None:
            return self.creds
        if not self.token_path.exists():
            logger.info("No Google token at %s", self.token_path)
            return None
        try:
            info = json.loads(self.token_path.read_text(encoding="utf-8"))
            if not self._has_required_scopes(info.get("scopes")):
                logger.warning("Google token is missing required scopes")
                return None
            self.creds = Credentials.from_authorized_user_info(info, self.scopes)
        except (ValueError, json.JSONDecodeError, AttributeError) as exc:
            logger.warning("Failed to load Google token: %s", exc)
            self.creds = None
        return self.creds

    def is_authorized(self) -> bool:
        creds = self.load_credentials()
        if creds is None:
            return False
        return bool(creds.valid or creds.refresh_token)

    def get_credentials(self) -> Optional[Credentials]:
        return self.load_credentials()

    def reset_credentials(self) -> None:
        self.creds = None

    def _has_required_scopes(self, granted) -> bool:
        if isinstance(granted, str):
            granted = granted.split()
        current = set(granted or [])
        # tokens written without explicit scopes carry the requested ones
        if not current:
            return True
        return all(scope in current for scope in self.scopes)


__all__ = ["GoogleAuth"]
