#!/usr/bin/env python3
"""GPG signing backend for built Debian packages."""

from __future__ import annotations

import enum
import logging
import os
import shutil
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from .utils import (
    CommandExecutionError,
    cleanup_dir,
    command_exists,
    create_temp_dir,
    remove_file,
    run_command,
    write_private_file,
)

DECRYPT_CIPHER = "aes-256-cbc"
PASSWORD_ENV = "CONNECTOR2DEB_ENCRYPTION_PASSWORD"
SIGNING_ROLE = "builder"
PASSPHRASE_FILENAME = "passphrase"


class SigningState(enum.Enum):
    """Where the signing pipeline is, or where it stopped."""

    SKIPPED = "skipped"
    DECRYPTING = "decrypting"
    IMPORTING = "importing"
    SIGNING = "signing"
    SIGNED = "signed"
    FAILED = "failed"


class SigningError(CommandExecutionError):
    """Raised when any signing stage fails; ``stage`` names the stage."""

    stage = SigningState.FAILED


class DecryptError(SigningError):
    """Raised when the encrypted key cannot be decrypted."""

    stage = SigningState.DECRYPTING


class KeyImportError(SigningError):
    """Raised when gpg rejects the decrypted key."""

    stage = SigningState.IMPORTING


class SignError(SigningError):
    """Raised when dpkg-sig fails to sign the archive."""

    stage = SigningState.SIGNING


@dataclass(frozen=True)
class SigningContext:
    """Key material and secrets for one signing run."""

    encrypted_key_path: Path
    decryption_password: Optional[str] = None
    signing_key_id: Optional[str] = None
    signature_password: Optional[str] = None
    temporary_key_path: Optional[Path] = None

    def __repr__(self) -> str:
        return (
            f"SigningContext(encrypted_key_path={str(self.encrypted_key_path)!r}, "
            f"signing_key_id={self.signing_key_id!r})"
        )


@dataclass
class SigningResult:
    """Structured result of a signing attempt."""

    state: SigningState
    package_path: Path
    key_id: Optional[str] = None

    @property
    def signed(self) -> bool:
        return self.state is SigningState.SIGNED


class PackageSigner:
    """Decrypt, import and apply a GPG signature with dpkg-sig."""

    required_tools = ("openssl", "gpg", "dpkg-sig")

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("connector2deb.signer")

    def sign(
        self,
        package_path: Path,
        context: SigningContext,
        timeout: Optional[float] = None,
        log_callback=None,
    ) -> SigningResult:
        """Sign ``package_path`` in place, or skip when no key file exists.

        The archive is signed as a copy and only swapped in once dpkg-sig
        succeeds. The decrypted key never outlives this call.
        """
        if not context.encrypted_key_path.is_file():
            self.logger.info("No encrypted key at %s; leaving package unsigned", context.encrypted_key_path)
            if log_callback:
                log_callback("Skipping signing (no key configured)")
            return SigningResult(SigningState.SKIPPED, package_path)

        if log_callback:
            log_callback("Signing package")

        missing = [tool for tool in self.required_tools if not command_exists(tool)]
        if missing:
            raise SigningError(f"Signing requires missing tools: {', '.join(missing)}")

        workspace: Optional[Path] = None
        secrets_dir: Optional[Path] = None
        state = SigningState.DECRYPTING

        try:
            try:
                workspace = create_temp_dir(prefix=".sign-", parent=package_path.parent)
                secrets_dir = create_temp_dir(prefix="connector2deb-key-")
                os.chmod(workspace, 0o700)
                os.chmod(secrets_dir, 0o700)
            except OSError as exc:
                raise SigningError(f"Unable to create signing workspace for {package_path.name}: {exc}") from exc

            context = replace(context, temporary_key_path=secrets_dir / "key.gpg")
            self.decrypt_key(context, timeout)
            state = SigningState.IMPORTING
            self.import_key(context, timeout)
            state = SigningState.SIGNING

            working_copy = workspace / package_path.name
            try:
                shutil.copy2(package_path, working_copy)
            except OSError as exc:
                raise SignError(f"Unable to stage {package_path.name} for signing: {exc}") from exc
            self.sign_archive(working_copy, context, timeout, passphrase_file=secrets_dir / PASSPHRASE_FILENAME)
            try:
                os.replace(working_copy, package_path)
            except OSError as exc:
                raise SignError(f"Unable to replace {package_path.name} with signed copy: {exc}") from exc
        except SigningError:
            self.logger.error("Signing failed while %s", state.value)
            raise
        finally:
            if secrets_dir is not None:
                remove_file(secrets_dir / "key.gpg", self.logger)
                remove_file(secrets_dir / PASSPHRASE_FILENAME, self.logger)
                cleanup_dir(secrets_dir, self.logger)
            if workspace is not None:
                cleanup_dir(workspace, self.logger)

        self.logger.info("Signed %s with key %s", package_path, context.signing_key_id)
        return SigningResult(SigningState.SIGNED, package_path, context.signing_key_id)

    def decrypt_key(self, context: SigningContext, timeout: Optional[float] = None) -> Path:
        """Decrypt the encrypted key into ``context.temporary_key_path``."""
        if not context.decryption_password:
            raise DecryptError("An encryption password is required to decrypt the signing key")

        cmd = [
            "openssl",
            DECRYPT_CIPHER,
            "-d",
            "-in",
            str(context.encrypted_key_path),
            "-out",
            str(context.temporary_key_path),
            "-pass",
            f"env:{PASSWORD_ENV}",
        ]
        try:
            run_command(
                cmd,
                self.logger,
                env={PASSWORD_ENV: context.decryption_password},
                timeout=timeout,
                secrets=[context.decryption_password],
            )
        except CommandExecutionError as exc:
            raise DecryptError(
                f"Failed to decrypt signing key: {exc}",
                cmd=exc.cmd,
                returncode=exc.returncode,
                output=exc.output,
            ) from exc
        return context.temporary_key_path

    def import_key(self, context: SigningContext, timeout: Optional[float] = None) -> None:
        """Import the decrypted key into the local keyring."""
        cmd = ["gpg", "--batch", "--yes", "--import", str(context.temporary_key_path)]
        try:
            run_command(cmd, self.logger, timeout=timeout)
        except CommandExecutionError as exc:
            raise KeyImportError(
                f"Failed to import signing key: {exc}",
                cmd=exc.cmd,
                returncode=exc.returncode,
                output=exc.output,
            ) from exc

    def sign_archive(
        self,
        archive: Path,
        context: SigningContext,
        timeout: Optional[float] = None,
        passphrase_file: Optional[Path] = None,
    ) -> None:
        """Run dpkg-sig non-interactively against ``archive``.

        The passphrase reaches gpg through a 0600 file, since dpkg-sig
        splits its ``-g`` option string on whitespace. The caller owns
        removal of ``passphrase_file``.
        """
        gpg_options = "--batch --no-tty --pinentry-mode loopback"
        if context.signature_password:
            if passphrase_file is None:
                passphrase_file = archive.parent / PASSPHRASE_FILENAME
            try:
                write_private_file(passphrase_file, context.signature_password)
            except OSError as exc:
                raise SignError(f"Unable to write passphrase file: {exc}") from exc
            gpg_options += f" --passphrase-file {passphrase_file}"

        cmd = ["dpkg-sig", "--sign", SIGNING_ROLE]
        if context.signing_key_id:
            cmd += ["-k", context.signing_key_id]
        cmd += ["-g", gpg_options, str(archive)]

        try:
            run_command(
                cmd,
                self.logger,
                timeout=timeout,
                secrets=[context.signature_password],
            )
        except CommandExecutionError as exc:
            raise SignError(
                f"Failed to sign {archive.name}: {exc}",
                cmd=exc.cmd,
                returncode=exc.returncode,
                output=exc.output,
            ) from exc
