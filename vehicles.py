"""
Vehicle data lookups (makes, models, years) proxied from CarAPI.

Credentials are either a long-lived key used directly as the bearer token,
or a token/secret pair exchanged for a short-lived JWT that is cached until
shortly before it expires.
"""

import logging
import time
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException

from config import Config

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 60
LONG_LIVED_TTL = 30 * 24 * 60 * 60
DEFAULT_TTL = 600


class VehicleApiError(Exception):
    pass


class CarApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        session=None,
    ):
        self.base_url = (base_url or Config.CAR_API_BASE_URL).rstrip("/")
        self.api_token = Config.CAR_API_TOKEN if api_token is None else api_token
        self.api_secret = Config.CAR_API_SECRET if api_secret is None else api_secret
        self.timeout = Config.CAR_API_TIMEOUT if timeout is None else timeout
        self.session = session or requests.Session()
        self._jwt: Optional[str] = None
        self._expires_at = 0.0

    def _token_valid(self) -> bool:
        return bool(self._jwt) and self._expires_at - time.time() > REFRESH_MARGIN_SECONDS

    def _login(self) -> str:
        if self.api_token and not self.api_secret:
            self._jwt = self.api_token
            self._expires_at = time.time() + LONG_LIVED_TTL
            return self._jwt
        if not self.api_token or not self.api_secret:
            raise VehicleApiError("Missing CarAPI credentials")

        response = self.session.post(
            f"{self.base_url}/auth/login",
            json={"api_token": self.api_token, "api_secret": self.api_secret},
            timeout=self.timeout,
        )
        response.raise_for_status()
        # Either a bare JWT as text or an object carrying it
        try:
            data = response.json()
        except ValueError:
            data = response.text.strip()
        token = (data.get("jwt") or data.get("token")) if isinstance(data, dict) else data
        if not token or not isinstance(token, str):
            raise VehicleApiError("Unexpected CarAPI auth response")
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            claims = {}
        self._jwt = token
        self._expires_at = float(claims.get("exp") or time.time() + DEFAULT_TTL)
        logger.info("Obtained CarAPI token")
        return token

    def token(self) -> str:
        if self._token_valid():
            return self._jwt
        return self._login()

    def get(self, path: str, params: Dict[str, Any]) -> Any:
        response = self.session.get(
            f"{self.base_url}/{path.lstrip('/')}",
            headers={"Authorization": f"Bearer {self.token()}"},
            params=params,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def makes(self, page: int = 1, limit: int = 1000) -> Any:
        return self.get("makes", {"page": page, "limit": limit})

    def models(self, make: str) -> Any:
        return self.get("models", {"make": make})

    def years(self, make: str, model: str) -> Any:
        return self.get("years", {"make": make, "model": model})


def fetch(label: str, call, *args, **kwargs) -> Any:
    try:
        return call(*args, **kwargs)
    except (requests.RequestException, VehicleApiError, ValueError) as e:
        logger.error(f"Error fetching {label}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to fetch {label}")


_client: Optional[CarApiClient] = None


def get_vehicle_api() -> CarApiClient:
    global _client
    if _client is None:
        _client = CarApiClient()
    return _client
