from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import PayloadDecodeError


class PayloadCodec:
    """
    Encrypts payloads at rest when a Fernet key is configured, and passes them
    through unchanged otherwise.
    """

    def __init__(self, key: Optional[bytes] = None):
        self.fernet = Fernet(key) if key else None

    @property
    def encrypted(self) -> bool:
        return self.fernet is not None

    def encode(self, payload: bytes) -> bytes:
        if self.fernet is None:
            return payload
        return self.fernet.encrypt(payload)

    def decode(self, payload: bytes) -> bytes:
        if self.fernet is None:
            return payload
        try:
            return self.fernet.decrypt(payload)
        except InvalidToken as e:
            raise PayloadDecodeError("Stored payload could not be decrypted with the configured key") from e
