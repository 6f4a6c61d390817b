"""Secret loading helpers: SOPS-encrypted or plain dotenv files, and key decoding."""

import base64
import binascii
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values


def load_secrets(encrypted_path: str | Path) -> dict[str, str | None]:
    """Decrypt a SOPS-encrypted .env file and return its key-value pairs.

    Args:
        encrypted_path: Path to the encrypted .env.enc file.

    Returns:
        Dictionary of decrypted key-value pairs.

    Raises:
        FileNotFoundError: If the encrypted file does not exist.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise FileNotFoundError(f"Encrypted secrets file not found: {path}")

    result = subprocess.run(
        ["sops", "--decrypt", str(path)],
        capture_output=True,
        text=True,
        check=True,
    )
    return dict(dotenv_values(stream=StringIO(result.stdout)))


def load_dotenv_fallback(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file, or nothing if it is absent.

    The replicator is usually deployed with its settings injected as
    environment variables, so a missing file is not an error here.
    """
    path = Path(dotenv_path)
    if not path.is_file():
        return {}
    return dict(dotenv_values(path))


def decode_private_key(encoded: str) -> str:
    """Decode a base64-encoded private key into PEM/OpenSSH text.

    Raises:
        ValueError: If the value is empty, not valid base64, or not UTF-8 text.
    """
    if not encoded or not encoded.strip():
        raise ValueError("Private key secret is empty")
    try:
        raw = base64.b64decode("".join(encoded.split()), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError(f"Private key secret is not valid base64 text: {exc}") from exc
