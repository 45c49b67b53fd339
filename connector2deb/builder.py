#!/usr/bin/env python3
"""Staging, dpkg packaging and build orchestration for connector packages."""

from __future__ import annotations

import json
import logging
import platform
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .signer import PackageSigner, SigningContext, SigningResult
from .templating import render_templates, resolve_templates
from .utils import (
    CommandExecutionError,
    MissingArtifactError,
    PackageBuildError,
    StagingError,
    ValidationError,
    cleanup_dir,
    command_exists,
    run_command,
)

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_TEMPLATE_ROOT = PACKAGE_DIR / "templates"
DEFAULT_ENCRYPTED_KEY_PATH = PACKAGE_DIR / "key.gpg.enc"
DEFAULT_GPG_KEY_ID = "445C1350"
NODE_VERSION = "8"
PACKAGE_REVISION = "1"
UNSUPPORTED_ARCH = "unsupported"

HOST_TO_DEBIAN_ARCH = {
    "ia32": "i386",
    "x64": "amd64",
    "arm": "armhf",
}

MACHINE_TO_HOST_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i386": "ia32",
    "i486": "ia32",
    "i586": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "ia32": "ia32",
    "armv6l": "arm",
    "armv7l": "arm",
    "armhf": "arm",
    "arm": "arm",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def host_arch(machine: Optional[str] = None) -> str:
    """Normalize a machine name (default: this host) to ia32/x64/arm/arm64 tokens."""
    raw = (machine if machine is not None else platform.machine()).strip().lower()
    return MACHINE_TO_HOST_ARCH.get(raw, raw)


def debian_arch(arch: str) -> str:
    """Map a host architecture token to the Debian architecture name.

    Unknown values map to ``unsupported`` rather than raising.
    """
    return HOST_TO_DEBIAN_ARCH.get(arch, UNSUPPORTED_ARCH)


def build_target(arch: Optional[str] = None, system: Optional[str] = None) -> str:
    """Return the deploy target directory name, e.g. ``node8-linux-x64``."""
    arch = arch if arch is not None else host_arch()
    system = system if system is not None else sys.platform
    if system.startswith("linux"):
        system = "linux"
    elif system == "darwin":
        system = "macos"
    elif system == "win32":
        system = "win"

    if arch == "ia32":
        arch = "x86"
    elif arch == "arm":
        arch = "armv7"
    return f"node{NODE_VERSION}-{system}-{arch}"


@dataclass(frozen=True)
class PackageMetadata:
    """Build metadata read from the connector's package.json."""

    name: str
    version: str
    description: str
    homepage: str
    license: str
    architecture: str
    maintainer: str = ""

    @property
    def package_name(self) -> str:
        return f"{self.name}_{self.version}-{PACKAGE_REVISION}_{self.architecture}"

    def template_data(self) -> dict[str, str]:
        """Placeholder values, including the ``type`` and ``arch`` aliases."""
        return {
            "name": self.name,
            "type": self.name,
            "version": self.version,
            "description": self.description,
            "homepage": self.homepage,
            "license": self.license,
            "architecture": self.architecture,
            "arch": self.architecture,
            "maintainer": self.maintainer,
        }


@dataclass
class InstallerOptions:
    """Fully resolved configuration for a single build."""

    connector_path: Path
    destination_path: Optional[str] = None
    encrypted_gpg_key_path: Path = DEFAULT_ENCRYPTED_KEY_PATH
    gpg_key_id: str = DEFAULT_GPG_KEY_ID
    cert_password: Optional[str] = None
    encryption_password: Optional[str] = None
    command_timeout: Optional[float] = None
    render_workers: int = 4
    template_root: Path = DEFAULT_TEMPLATE_ROOT
    arch: Optional[str] = None


@dataclass(frozen=True)
class BuildContext:
    """Paths and metadata threaded through every build stage."""

    metadata: PackageMetadata
    connector_path: Path
    deploy_path: Path
    installers_path: Path
    stage_path: Path
    install_path: str

    @property
    def binaries_path(self) -> Path:
        return self.deploy_path / "bin"

    @property
    def override_template_root(self) -> Path:
        return self.connector_path / ".installer" / "debian" / "templates"

    @property
    def package_path(self) -> Path:
        return self.installers_path / f"{self.stage_path.name}.deb"


@dataclass
class BuildResult:
    """Outcome of a successful build."""

    metadata: PackageMetadata
    package_path: Path
    signing: Optional[SigningResult] = None
    rendered: list[Path] = field(default_factory=list)


def _format_author(author: Any) -> str:
    if isinstance(author, dict):
        name = str(author.get("name", "")).strip()
        email = str(author.get("email", "")).strip()
        if name and email:
            return f"{name} <{email}>"
        return name or email
    if author is None:
        return ""
    return str(author).strip()


def load_metadata(connector_path: Path, arch: Optional[str] = None) -> PackageMetadata:
    """Read package.json under ``connector_path`` into ``PackageMetadata``."""
    descriptor = connector_path / "package.json"
    if not descriptor.is_file():
        raise ValidationError(f"Connector descriptor not found: {descriptor}")

    try:
        fields = json.loads(descriptor.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValidationError(f"Unable to parse {descriptor}: {exc}") from exc

    if not isinstance(fields, dict):
        raise ValidationError(f"{descriptor} must contain a JSON object")

    for required in ("name", "version"):
        if not fields.get(required):
            raise ValidationError(f"{descriptor} is missing '{required}'")

    return PackageMetadata(
        name=str(fields["name"]),
        version=str(fields["version"]),
        description=str(fields.get("description") or ""),
        homepage=str(fields.get("homepage") or ""),
        license=str(fields.get("license") or ""),
        architecture=debian_arch(arch if arch is not None else host_arch()),
        maintainer=_format_author(fields.get("author")),
    )


class ConnectorPackageBuilder:
    """Stage, build and sign a Debian package for a prebuilt connector."""

    def __init__(self, logger: Optional[logging.Logger] = None, signer: Optional[PackageSigner] = None) -> None:
        self.logger = logger or logging.getLogger("connector2deb.builder")
        self.signer = signer or PackageSigner(self.logger.getChild("signer"))

    def prepare(self, options: InstallerOptions) -> BuildContext:
        """Derive the build context from options and the connector descriptor."""
        connector_path = Path(options.connector_path).expanduser().resolve()
        if not connector_path.is_dir():
            raise ValidationError(f"Connector path is not a directory: {connector_path}")

        arch = options.arch if options.arch is not None else host_arch()
        metadata = load_metadata(connector_path, arch)
        deploy_path = connector_path / "deploy" / build_target(arch)
        installers_path = deploy_path / "installers"
        install_path = options.destination_path or f"usr/share/{metadata.name}/connectors/{metadata.name}"

        return BuildContext(
            metadata=metadata,
            connector_path=connector_path,
            deploy_path=deploy_path,
            installers_path=installers_path,
            stage_path=installers_path / metadata.package_name,
            install_path=install_path.strip("/"),
        )

    def build(self, options: InstallerOptions, log_callback=None) -> BuildResult:
        """Run every stage and always remove the staging tree afterwards."""
        context = self.prepare(options)
        self.logger.info(
            "Building %s %s for %s",
            context.metadata.name,
            context.metadata.version,
            context.metadata.architecture,
        )

        try:
            rendered = self.assemble(
                context,
                options.template_root,
                workers=options.render_workers,
                log_callback=log_callback,
            )
            package_path = self.build_package(context, timeout=options.command_timeout, log_callback=log_callback)
            signing = self.signer.sign(
                package_path,
                SigningContext(
                    encrypted_key_path=Path(options.encrypted_gpg_key_path),
                    decryption_password=options.encryption_password,
                    signing_key_id=options.gpg_key_id,
                    signature_password=options.cert_password,
                ),
                timeout=options.command_timeout,
                log_callback=log_callback,
            )
        finally:
            self.cleanup(context)

        return BuildResult(
            metadata=context.metadata,
            package_path=package_path,
            signing=signing,
            rendered=rendered,
        )

    def assemble(
        self,
        context: BuildContext,
        template_root: Path = DEFAULT_TEMPLATE_ROOT,
        workers: int = 4,
        log_callback=None,
    ) -> list[Path]:
        """Lay out the staging tree: templates first, then binaries."""
        if log_callback:
            log_callback("Processing templates")

        cleanup_dir(context.stage_path, self.logger)
        try:
            context.stage_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingError(f"Unable to create staging tree {context.stage_path}: {exc}") from exc

        resolved = resolve_templates(context.override_template_root, template_root)
        self.logger.info("Rendering %d template(s) into %s", len(resolved), context.stage_path)
        rendered = render_templates(
            resolved,
            context.metadata.template_data(),
            context.stage_path,
            workers=workers,
        )

        self.copy_binaries(context, log_callback)
        return rendered

    def copy_binaries(self, context: BuildContext, log_callback=None) -> Path:
        """Copy deploy/<target>/bin into the package installation path."""
        if log_callback:
            log_callback("Copying pkg assets")

        source = context.binaries_path
        if not source.is_dir():
            raise MissingArtifactError(f"Source path does not exist: {source}")

        destination = context.stage_path / context.install_path
        try:
            destination.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        except OSError as exc:
            raise StagingError(f"Unable to copy {source} -> {destination}: {exc}") from exc
        self.logger.debug("Copied %s -> %s", source, destination)
        return destination

    def build_package(self, context: BuildContext, timeout: Optional[float] = None, log_callback=None) -> Path:
        """Run ``dpkg --build`` on the staged tree and return the archive path."""
        if log_callback:
            log_callback("Building package")

        if not command_exists("dpkg"):
            raise PackageBuildError("dpkg is required to build Debian packages")

        cmd = ["dpkg", "--build", context.stage_path.name]
        try:
            run_command(
                cmd,
                self.logger,
                cwd=context.installers_path,
                timeout=timeout,
            )
        except CommandExecutionError as exc:
            raise PackageBuildError(
                f"dpkg failed to build {context.stage_path.name}: {exc}",
                cmd=exc.cmd,
                returncode=exc.returncode,
                output=exc.output,
            ) from exc

        package_path = context.package_path
        if not package_path.is_file():
            raise PackageBuildError(f"dpkg completed but {package_path} was not produced", cmd=cmd)

        self.logger.info("Built %s", package_path)
        return package_path

    def cleanup(self, context: BuildContext) -> None:
        """Remove the staging tree."""
        cleanup_dir(context.stage_path, self.logger)
