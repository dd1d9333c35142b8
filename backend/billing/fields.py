from __future__ import annotations

from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings
from django.db import models


def get_cipher() -> MultiFernet | None:
    keys = [key for key in getattr(settings, "FERNET_KEYS", []) if key]
    if not keys:
        return None
    # The first key encrypts; every key is tried on decrypt.
    return MultiFernet([Fernet(key.encode("utf-8")) for key in keys])


class EncryptedCharField(models.CharField):
    """CharField whose value is stored as a Fernet token.

    Values written before a key was configured are returned as-is.
    """

    def get_prep_value(self, value: Any):
        value = super().get_prep_value(value)
        if value in (None, ""):
            return value
        cipher = get_cipher()
        if cipher is None:
            return value
        return cipher.encrypt(str(value).encode("utf-8")).decode("utf-8")

    def from_db_value(self, value, expression, connection):
        return self.to_python(value)

    def to_python(self, value: Any):
        if value in (None, "") or not isinstance(value, str):
            return value
        cipher = get_cipher()
        if cipher is None:
            return value
        try:
            return cipher.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return value
