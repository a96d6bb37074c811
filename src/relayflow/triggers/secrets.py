"""Secret reference resolution for trigger authentication."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

from relayflow.errors import FatalConfigError

SECRET_ENV_PREFIX = "RELAYFLOW_SECRET_"


def secret_env_name(ref: str) -> str:
    """``orders/webhook-key`` -> ``RELAYFLOW_SECRET_ORDERS_WEBHOOK_KEY``."""
    return SECRET_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]+", "_", ref).strip("_").upper()


class SecretResolver:
    """Looks up secrets by reference.

    Explicitly registered secrets win; otherwise the reference is read
    from the ``RELAYFLOW_SECRET_<REF>`` environment variable.
    """

    def __init__(
        self,
        secrets: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._secrets = dict(secrets or {})
        self._env = env if env is not None else os.environ

    def add(self, ref: str, value: str) -> None:
        self._secrets[ref] = value

    def resolve(self, ref: str) -> str:
        """Return the secret for *ref*.

        Raises:
            FatalConfigError: If the reference is empty or unknown.
        """
        if not ref:
            raise FatalConfigError("Secret reference is empty")
        if ref in self._secrets:
            return self._secrets[ref]
        value = self._env.get(secret_env_name(ref))
        if value is None:
            raise FatalConfigError(
                f"Secret '{ref}' is not configured (set {secret_env_name(ref)})"
            )
        return value
