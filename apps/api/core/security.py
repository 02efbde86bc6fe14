"""
Capa de seguridad:
- AES-256-GCM para cifrar access_token / refresh_token de Monzo en reposo
- secrets.token_urlsafe para el parámetro `state` de la redirección OAuth

NUNCA loguear ni exponer: ENCRYPTION_KEY, MONZO_CLIENT_SECRET,
access_token, refresh_token, ni sus valores cifrados.
"""

import base64
import binascii
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_KEY_BYTES = 32                # AES-256
_NONCE_BYTES = 12              # 96 bits, estándar GCM
_TAG_BYTES = 16


def new_oauth_state() -> str:
    """Valor aleatorio para el parámetro `state` de la redirección OAuth."""
    return secrets.token_urlsafe(16)


class TokenCipher:
    """
    Cifrado simétrico de tokens OAuth.
    Formato: base64url(nonce[12] || ciphertext+tag). `cryptography` añade el tag al final.
    """

    def __init__(self, encoded_key: str) -> None:
        try:
            key = base64.urlsafe_b64decode(encoded_key)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("ENCRYPTION_KEY no es base64url válido") from exc
        if len(key) != _KEY_BYTES:
            raise ValueError(f"ENCRYPTION_KEY debe ser {_KEY_BYTES} bytes, tiene {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        """Lanza ValueError si la clave es incorrecta o el dato está corrupto."""
        try:
            raw = base64.urlsafe_b64decode(encrypted)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Formato de cifrado inválido") from exc

        if len(raw) < _NONCE_BYTES + _TAG_BYTES:
            raise ValueError("Dato cifrado demasiado corto")

        try:
            return self._aesgcm.decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], None).decode("utf-8")
        except InvalidTag as exc:
            raise ValueError("Descifrado fallido: clave incorrecta o dato corrupto") from exc
