#!/usr/bin/env python3
"""
Unit tests for SSH key discovery and generation
"""

import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

import paramiko

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vpsops.sshkey import SshKeyManager


class TestFindPublicKey:

    def test_none_when_empty(self, tmp_path):
        assert SshKeyManager(tmp_path).find_public_key() is None

    def test_prefers_ed25519(self, tmp_path):
        (tmp_path / "id_rsa.pub").write_text("ssh-rsa AAAArsa me\n")
        (tmp_path / "id_ed25519.pub").write_text("ssh-ed25519 AAAAed me\n")
        assert SshKeyManager(tmp_path).find_public_key() == "ssh-ed25519 AAAAed me"

    def test_skips_garbage(self, tmp_path):
        (tmp_path / "id_ed25519.pub").write_text("not a key")
        (tmp_path / "id_ecdsa.pub").write_text("ecdsa-sha2-nistp256 AAAA me")
        (tmp_path / "id_rsa.pub").write_text("ssh-rsa AAAArsa me")
        assert SshKeyManager(tmp_path).find_public_key() == "ssh-rsa AAAArsa me"


class TestGenerateKey:

    @patch("vpsops.sshkey.paramiko.RSAKey.generate")
    def test_generates_and_writes_pair(self, mock_generate, tmp_path):
        key = MagicMock()
        key.get_name.return_value = "ssh-rsa"
        key.get_base64.return_value = "AAAAB3Nza"
        key.write_private_key_file.side_effect = lambda path: Path(path).write_text("PRIVATE")
        mock_generate.return_value = key

        ssh_dir = tmp_path / ".ssh"
        public = SshKeyManager(ssh_dir).generate_key()

        assert public == "ssh-rsa AAAAB3Nza vpsops"
        mock_generate.assert_called_once_with(4096)
        assert stat.S_IMODE(os.stat(ssh_dir / "id_rsa").st_mode) == 0o600
        assert (ssh_dir / "id_rsa.pub").read_text().strip() == public
        assert SshKeyManager(ssh_dir).find_public_key() == public

    @patch("vpsops.sshkey.paramiko.RSAKey.from_private_key_file")
    @patch("vpsops.sshkey.paramiko.RSAKey.generate")
    def test_existing_private_key_is_not_overwritten(self, mock_generate, mock_load, tmp_path):
        (tmp_path / "id_rsa").write_text("EXISTING")
        key = MagicMock()
        key.get_name.return_value = "ssh-rsa"
        key.get_base64.return_value = "AAAAexisting"
        mock_load.return_value = key

        public = SshKeyManager(tmp_path).generate_key()

        assert public == "ssh-rsa AAAAexisting vpsops"
        mock_generate.assert_not_called()
        assert (tmp_path / "id_rsa").read_text() == "EXISTING"

    @patch("vpsops.sshkey.paramiko.RSAKey.from_private_key_file")
    def test_unreadable_key_returns_none(self, mock_load, tmp_path):
        (tmp_path / "id_rsa").write_text("garbage")
        mock_load.side_effect = paramiko.SSHException("not a valid RSA private key file")
        assert SshKeyManager(tmp_path).generate_key() is None


def test_get_or_create_prefers_existing(tmp_path):
    (tmp_path / "id_ed25519.pub").write_text("ssh-ed25519 AAAA me")
    manager = SshKeyManager(tmp_path)
    with patch.object(manager, "generate_key") as mock_gen:
        assert manager.get_or_create_public_key() == "ssh-ed25519 AAAA me"
        mock_gen.assert_not_called()


def test_key_name():
    assert SshKeyManager.key_name().startswith("vpsops-")
