from __future__ import annotations

import base64
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from serialboxd.core.crypto import AES_KEY_BYTES, KeyCustodian


def generate_keypair(private_path: Path, public_path: Path, key_size: int = 2048) -> None:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    os.chmod(private_path, 0o600)
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )


def main() -> int:
    """Create the RSA keypair if missing and print a fresh wrapped AES key for WRAPPED_ENCRYPTION_KEY."""
    private_path = Path(os.getenv("PRIVATE_KEY_PATH", "private_key.pem"))
    public_path = Path(os.getenv("PUBLIC_KEY_PATH", "public_key.pem"))
    if not private_path.exists() or not public_path.exists():
        generate_keypair(private_path, public_path)
        print(f"Generated {private_path} and {public_path}", file=sys.stderr)

    wrapped = KeyCustodian.wrap(os.urandom(AES_KEY_BYTES), public_path.read_bytes())
    print(f"WRAPPED_ENCRYPTION_KEY={base64.b64encode(wrapped).decode('ascii')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
