"""
Encryption utilities for sealing backup archives at rest.

Archives are sealed as OpenPGP symmetric messages (AES256, passphrase
based) through the gpg binary, so any artifact can be opened by hand with
``gpg --decrypt`` and artifacts sealed with ``gpg --symmetric`` can be
restored.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager

import gnupg


logger = logging.getLogger(__name__)

SEALED_SUFFIX = '.gpg'
CIPHER_ALGO = 'AES256'


class EncryptionError(Exception):
    """Raised when sealing or opening an archive fails."""
    pass


@contextmanager
def _gpg():
    """
    Yield a GPG wrapper bound to a throwaway home directory.

    Symmetric operations need no keyring.
    """
    home = tempfile.mkdtemp(prefix='sidecar-gnupg-')
    try:
        try:
            gpg = gnupg.GPG(gnupghome=home)
        except (OSError, ValueError) as e:
            raise EncryptionError(f"GPG not available: {e}")
        yield gpg
    finally:
        shutil.rmtree(home, ignore_errors=True)


def seal_file(input_path: str, passphrase: str) -> str:
    """
    Encrypt a file to {input_path}.gpg and remove the plaintext.

    Args:
        input_path: Path of the plaintext archive
        passphrase: Encryption passphrase

    Returns:
        Path of the sealed file

    Raises:
        EncryptionError: If encryption fails (no partial output is left behind)
    """
    if not passphrase:
        raise EncryptionError("Encryption passphrase is empty")

    output_path = f"{input_path}{SEALED_SUFFIX}"

    try:
        with _gpg() as gpg, open(input_path, 'rb') as src:
            result = gpg.encrypt_file(
                src,
                None,
                symmetric=CIPHER_ALGO,
                passphrase=passphrase,
                armor=False,
                output=output_path,
            )
    except EncryptionError:
        _remove_quietly(output_path)
        raise
    except OSError as e:
        _remove_quietly(output_path)
        raise EncryptionError(f"Encryption failed: {e}")

    if not result.ok or not os.path.exists(output_path):
        _remove_quietly(output_path)
        logger.debug(f"gpg stderr: {result.stderr}")
        raise EncryptionError(f"Encryption failed ({result.status or 'no output'})")

    os.remove(input_path)
    return output_path


def open_file(input_path: str, passphrase: str) -> str:
    """
    Decrypt {name}.gpg to {name}.

    The sealed input is left in place.

    Args:
        input_path: Path of the sealed file
        passphrase: Encryption passphrase

    Returns:
        Path of the decrypted file

    Raises:
        EncryptionError: If the passphrase is missing or decryption fails
    """
    if not passphrase:
        raise EncryptionError("BACKUP_ENCRYPTION_KEY not set, cannot decrypt")

    if input_path.endswith(SEALED_SUFFIX):
        output_path = input_path[:-len(SEALED_SUFFIX)]
    else:
        output_path = f"{input_path}.out"

    try:
        with _gpg() as gpg, open(input_path, 'rb') as src:
            result = gpg.decrypt_file(src, passphrase=passphrase, output=output_path)
    except EncryptionError:
        _remove_quietly(output_path)
        raise
    except OSError as e:
        _remove_quietly(output_path)
        raise EncryptionError(f"Decryption failed: {e}")

    if not result.ok:
        _remove_quietly(output_path)
        logger.debug(f"gpg stderr: {result.stderr}")
        raise EncryptionError(
            f"Decryption failed: wrong passphrase or corrupted data ({result.status})"
        )

    return output_path


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
