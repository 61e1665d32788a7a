import base64
import hashlib
import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from acme_cert_orchestrator.exceptions import ConfigError

DISCARD_LOGGER_NAME = "acme_cert_orchestrator.discard"


def rsa_jwk_public(key: rsa.RSAPrivateKey | rsa.RSAPublicKey) -> dict:
    """
    Convert an RSA private key to a JSON Web Key (JWK) public key.

    Args:
        key (rsa.RSAPrivateKey): RSA private key.

    Returns:
        dict: JWK public key.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        key = key.public_key()

    public_numbers = key.public_numbers()

    return {
        "kty": "RSA",
        "n": b64url_uint(public_numbers.n),
        "e": b64url_uint(public_numbers.e),
    }


def b64url_uint(n: int) -> str:
    """
    Convert an unsigned integer to a Base64url-encoded string.

    Args:
        n (int): Unsigned integer.

    Raises:
        TypeError: If the input is not an unsigned integer.

    Returns:
        str: Base64url-encoded string.
    """
    if not isinstance(n, int) or n < 0:
        raise TypeError("Input must be an unsigned integer")

    length = max(1, (n.bit_length() + 7) // 8)
    encoded = base64.urlsafe_b64encode(n.to_bytes(length, "big")).rstrip(b"=")

    return encoded.decode("ascii")


def b64url(data: bytes) -> str:
    """
    Convert binary data to a Base64url-encoded string without padding.
    """
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def json_thumbprint(data: dict) -> str:
    """
    Calculate the RFC 7638 thumbprint of a JWK.

    Args:
    - data (dict): Input JWK.

    Returns:
    - str: Base64url-encoded SHA-256 thumbprint.
    """
    return b64url(hashlib.sha256(json_encode(data)).digest())


def json_encode(data: dict) -> bytes:
    """Encode a dictionary as compact, key-sorted JSON bytes."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def private_key_to_pem(private_key) -> str:
    """
    Converts a private key object to PEM format.

    Args:
    - private_key: The private key object to convert.

    Returns:
    - str: PEM formatted string representation of the private key.
    """
    pem_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return pem_bytes.decode("ascii")


def get_env_secrets(name: str, path: Path = Path(Path.cwd() / "secrets/")) -> str | None:
    """
    Get a secret from either an environment variable or a file in the secrets directory.

    Args:
        name (str): Environment variable name.
        path (Path): Path to the secrets directory (default: "secrets/").

    Returns:
        str: The secret value.

    Raises:
        EnvironmentError: If neither the environment variable nor the secret file exists.
    """
    secret = os.environ.get(name)

    if not secret and (path / name).exists():
        secret = (path / name).read_text().rstrip("\n")
        logging.debug(f"Loaded secret from file: {path}/{name}")
        return secret
    elif not secret and not (path / name).exists():
        raise OSError(f"Environment variable and/or secret file variable: {path}/{name} not found")
    return secret


def discard_logger() -> logging.Logger:
    """Return a logger that drops every record."""
    logger = logging.getLogger(DISCARD_LOGGER_NAME)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    logger.propagate = False
    logger.disabled = True
    return logger


class LoggerMixin:
    """Gives a component an injectable logger."""

    logger: logging.Logger

    def set_logger(self, logger: logging.Logger | None) -> None:
        """
        Replace the component logger.

        Args:
            logger: Logger to use, or None to discard all log output.
        """
        self.logger = logger if logger is not None else discard_logger()


def get_str(config: Mapping[str, Any] | None, key: str, default: str | None = None) -> str:
    """
    Read a string option from an opaque configuration mapping.

    Raises:
        ConfigError: If the key is missing and no default is given, or the value is not a string.
    """
    value = (config or {}).get(key)
    if value is None or value == "":
        if default is None:
            raise ConfigError(f"Missing required config field '{key}'")
        return default
    if not isinstance(value, str):
        raise ConfigError(f"Config field '{key}' must be a string, got {type(value).__name__}")
    return value


def get_int(config: Mapping[str, Any] | None, key: str, default: int = 0) -> int:
    """Read an integer option, accepting numeric strings."""
    value = (config or {}).get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Config field '{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Config field '{key}' must be an integer, got {value!r}") from None


def get_bool(config: Mapping[str, Any] | None, key: str, default: bool = False) -> bool:
    """Read a boolean option, accepting 'true'/'false' strings."""
    value = (config or {}).get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no"):
        return False
    raise ConfigError(f"Config field '{key}' must be a boolean, got {value!r}")


def get_list(config: Mapping[str, Any] | None, key: str) -> list[str]:
    """Read a list of strings; a ';' or ',' separated string is split."""
    value = (config or {}).get(key)
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.replace(",", ";").split(";") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise ConfigError(f"Config field '{key}' must be a list of strings")
