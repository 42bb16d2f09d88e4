"""Generated credential material and the secret-generation output contract."""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import Field, SecretStr

from mastodon_orchestrator.domain.models.base import ValueObject
from mastodon_orchestrator.domain.models.resource import decode_secret_data, encode_secret_data


REQUIRED_SECRET_KEYS: tuple[str, ...] = (
    "SECRET_KEY_BASE",
    "OTP_SECRET",
    "VAPID_PRIVATE_KEY",
    "VAPID_PUBLIC_KEY",
    "ACTIVE_RECORD_ENCRYPTION_DETERMINISTIC_KEY",
    "ACTIVE_RECORD_ENCRYPTION_KEY_DERIVATION_SALT",
    "ACTIVE_RECORD_ENCRYPTION_PRIMARY_KEY",
)

_MARKER = re.compile(r"^([A-Z][A-Z0-9_]*)=(\S.*)$")


def parse_secret_output(lines: Iterable[str]) -> dict[str, str]:
    """Collect ``KEY=value`` markers from job output. Later lines win."""
    values: dict[str, str] = {}
    for raw in lines:
        match = _MARKER.match(raw.strip())
        if match:
            values[match.group(1)] = match.group(2).strip()
    return values


class SecretMaterial(ValueObject):
    """Credential values held in memory between extraction and injection.

    Values are ``SecretStr`` so ``repr``, ``str`` and ``model_dump`` never
    show plaintext.
    """

    values: dict[str, SecretStr] = Field(default_factory=dict)

    @classmethod
    def from_plain(cls, values: dict[str, str]) -> SecretMaterial:
        return cls(values={key: SecretStr(value) for key, value in values.items()})

    @classmethod
    def from_encoded(cls, data: dict[str, str]) -> SecretMaterial:
        """Build from base64 Secret ``data`` as read back from the cluster."""
        return cls.from_plain(decode_secret_data(data))

    def keys(self) -> list[str]:
        return sorted(self.values)

    def reveal(self, key: str) -> str:
        return self.values[key].get_secret_value()

    def missing(self, required: Iterable[str]) -> list[str]:
        return [key for key in required if key not in self.values]

    def encoded(self, keys: Iterable[str] | None = None) -> dict[str, str]:
        """Base64 Secret ``data`` for the given keys (all keys by default)."""
        selected = list(keys) if keys is not None else self.keys()
        return encode_secret_data({key: self.reveal(key) for key in selected})
