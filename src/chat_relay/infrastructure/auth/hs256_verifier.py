from __future__ import annotations

import jwt

from chat_relay.application.dto.principal import Principal


def principal_from_claims(payload: dict) -> Principal:
    user_id = str(payload["sub"])
    username = payload.get("username") or payload.get("preferred_username") or user_id
    return Principal(user_id=user_id, username=str(username))


class HS256Verifier:
    """Verify JWTs signed with a shared HS256 secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def verify(self, token: str) -> Principal:
        payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        return principal_from_claims(payload)
