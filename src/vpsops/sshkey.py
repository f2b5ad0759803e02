"""Local SSH key discovery and generation."""

import logging
import os
import time
from pathlib import Path
from typing import Optional

import paramiko

logger = logging.getLogger(__name__)

PUBLIC_KEY_FILES = ("id_ed25519.pub", "id_rsa.pub", "id_ecdsa.pub")
GENERATED_KEY_FILE = "id_rsa"
GENERATED_KEY_BITS = 4096
KEY_COMMENT = "vpsops"


class SshKeyManager:
    """
    Finds the operator's public key, or creates one.

    Generated keys are RSA because paramiko can write them in the
    OpenSSH-compatible PEM format that ssh and scp read directly.
    """

    def __init__(self, ssh_dir: Optional[Path] = None):
        self.ssh_dir = Path(ssh_dir) if ssh_dir else Path.home() / ".ssh"

    def find_public_key(self) -> Optional[str]:
        for filename in PUBLIC_KEY_FILES:
            path = self.ssh_dir / filename
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.debug(f"Cannot read {path}: {e}")
                continue
            if content.startswith("ssh-"):
                return content
        return None

    def generate_key(self) -> Optional[str]:
        """Create an RSA key pair and return the public half, or None on failure."""
        private_path = self.ssh_dir / GENERATED_KEY_FILE
        public_path = self.ssh_dir / f"{GENERATED_KEY_FILE}.pub"
        try:
            self.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            if private_path.exists():
                # Private half without its .pub: derive instead of overwriting
                key = paramiko.RSAKey.from_private_key_file(str(private_path))
            else:
                key = paramiko.RSAKey.generate(GENERATED_KEY_BITS)
                key.write_private_key_file(str(private_path))
                os.chmod(private_path, 0o600)

            public_key = f"{key.get_name()} {key.get_base64()} {KEY_COMMENT}"
            public_path.write_text(public_key + "\n", encoding="utf-8")
            logger.info(f"SSH key ready at {private_path}")
            return public_key
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"SSH key generation failed: {e}")
            return None

    def get_or_create_public_key(self) -> Optional[str]:
        return self.find_public_key() or self.generate_key()

    @staticmethod
    def key_name() -> str:
        return f"{KEY_COMMENT}-{int(time.time() * 1000)}"
