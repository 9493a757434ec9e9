from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .api_models import SecureEnvelope
from .errors import DecryptError, EncryptError


class SecretSource(Protocol):
    def get(self, instance_id: str) -> Any: ...


def fernet_key(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


class SecurityService:
    """Encrypts payloads under a key derived from each instance's license."""

    def __init__(self, licenses: SecretSource):
        self.licenses = licenses

    def _fernet(self, instance_id: str) -> Fernet:
        return Fernet(fernet_key(self.licenses.get(instance_id).secret))

    def enc(self, instance_id: str, payload: Any) -> SecureEnvelope:
        try:
            raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncryptError(f"Payload for instance '{instance_id}' is not JSON serializable: {e}") from e
        return SecureEnvelope(data=self._fernet(instance_id).encrypt(raw).decode("ascii"))

    def dec(self, instance_id: str, envelope: SecureEnvelope | dict[str, Any]) -> Any:
        if isinstance(envelope, SecureEnvelope):
            token = envelope.data
        elif isinstance(envelope, dict):
            token = envelope.get("data")
        else:
            token = None
        if not isinstance(token, str):
            raise DecryptError(f"Malformed envelope for instance '{instance_id}'")
        try:
            raw = self._fernet(instance_id).decrypt(token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise DecryptError(f"Cannot decrypt payload for instance '{instance_id}'") from e
        try:
            return json.loads(raw)
        except ValueError as e:
            raise DecryptError(f"Decrypted payload for instance '{instance_id}' is not JSON") from e
