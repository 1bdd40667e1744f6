"""
Fishbowl authentication.

Login/logout against the remote server with token tracking, and the
unattended service login used by the scheduler.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from ..config import OrchestratorSettings
from ..control_plane.exceptions import ConfigurationError, RemoteCallError
from ..control_plane.session_store import SessionStore
from .client import FishbowlClient

logger = structlog.get_logger(__name__)


class AuthService:
    """Owns every remote session this process opens."""

    def __init__(self, client: FishbowlClient, sessions: SessionStore, settings: OrchestratorSettings) -> None:
        self.client = client
        self.sessions = sessions
        self.settings = settings

    def _login_payload(self, username: str, password: str, mfa_code: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "appName": self.settings.fishbowl_app_name,
            "appDescription": self.settings.fishbowl_app_description,
            "appId": self.settings.fishbowl_app_id,
            "username": username,
            "password": password,
        }
        if mfa_code:
            payload["mfaCode"] = mfa_code
        return payload

    def _logout_payload(self, username: Optional[str]) -> Dict[str, Any]:
        return {
            "appName": self.settings.fishbowl_app_name,
            "appId": self.settings.fishbowl_app_id,
            "username": username,
        }

    async def login(
        self,
        username: str,
        password: str,
        mfa_code: Optional[str] = None,
        interactive: bool = False,
    ) -> str:
        """Log in and track the token; interactive logins also raise the UI session flag."""
        logger.info("fishbowl_login", username=username, interactive=interactive)
        token = await self.client.login(self._login_payload(username, password, mfa_code))
        await self.sessions.track_token(token, self.client.server_url, username)
        if interactive:
            await self.sessions.start_interactive(token)
        return token

    async def logout(self, token: str, interactive: bool = False) -> bool:
        """
        Log a token out remotely and stop tracking it.

        Returns:
            True if the remote logout succeeded
        """
        username = None
        for info in await self.sessions.tracked_tokens():
            if info["token"] == token:
                username = info.get("username")
                break

        logged_out = True
        try:
            await self.client.logout(token, self._logout_payload(username))
        except RemoteCallError as e:
            logged_out = False
            logger.warning("fishbowl_logout_failed", error=str(e))
        else:
            await self.sessions.untrack_token(token)

        if interactive:
            await self.sessions.end_interactive()
        return logged_out

    async def logout_all_tokens(self) -> Dict[str, int]:
        """Log out every tracked token; tokens that fail stay tracked."""
        tokens = await self.sessions.tracked_tokens()
        if not tokens:
            logger.info("token_cleanup_nothing_to_do")
            return {"logged_out": 0, "failed": 0, "remaining": 0}

        logged_out = 0
        failed = 0
        for info in tokens:
            try:
                await self.client.logout(info["token"], self._logout_payload(info.get("username")))
            except RemoteCallError as e:
                failed += 1
                logger.warning("token_cleanup_failed", username=info.get("username"), error=str(e))
                continue
            await self.sessions.untrack_token(info["token"])
            logged_out += 1

        logger.info("token_cleanup_complete", logged_out=logged_out, failed=failed)
        return {"logged_out": logged_out, "failed": failed, "remaining": failed}

    async def service_token(self) -> str:
        """Cached scheduler token, or a fresh login with the configured service credentials."""
        cached = await self.sessions.get_service_token()
        if cached:
            return cached
        if not self.settings.has_service_credentials:
            raise ConfigurationError("Fishbowl service credentials are not configured")

        token = await self.login(self.settings.fishbowl_username, self.settings.fishbowl_password)
        await self.sessions.set_service_token(token)
        return token
