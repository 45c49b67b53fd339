from __future__ import annotations

import stat
from dataclasses import replace
from pathlib import Path

import pytest

from connector2deb.builder import ConnectorPackageBuilder
from connector2deb.signer import (
    PASSWORD_ENV,
    DecryptError,
    KeyImportError,
    PackageSigner,
    SignError,
    SigningContext,
    SigningError,
    SigningState,
)
from connector2deb.utils import write_private_file


@pytest.fixture
def archive(tmp_path) -> Path:
    installers = tmp_path / "installers"
    installers.mkdir()
    path = installers / "foo_1.0.0-1_amd64.deb"
    path.write_bytes(b"!<arch>\nunsigned")
    return path


@pytest.fixture
def signing_context(tmp_path) -> SigningContext:
    key = tmp_path / "key.gpg.enc"
    key.write_bytes(b"Salted__encrypted")
    return SigningContext(
        encrypted_key_path=key,
        decryption_password="open-sesame",
        signing_key_id="445C1350",
        signature_password="hunter2",
    )


def _leftovers(archive: Path) -> list[Path]:
    return [item for item in archive.parent.iterdir() if item != archive]


def test_skips_when_key_is_absent(archive, tmp_path, fake_runner):
    context = SigningContext(encrypted_key_path=tmp_path / "absent.gpg.enc")

    result = PackageSigner().sign(archive, context)

    assert result.state is SigningState.SKIPPED
    assert not result.signed
    assert fake_runner.calls == []
    assert archive.read_bytes() == b"!<arch>\nunsigned"


def test_signs_in_order_and_removes_key(archive, signing_context, fake_runner):
    result = PackageSigner().sign(archive, signing_context, timeout=30)

    assert result.state is SigningState.SIGNED
    assert result.key_id == "445C1350"
    assert fake_runner.tools() == ["openssl", "gpg", "dpkg-sig"]
    assert archive.read_bytes() == b"!<arch>\nunsigned+signed"
    assert _leftovers(archive) == []
    assert all(call["timeout"] == 30 for call in fake_runner.calls)

    decrypt, import_, sign = (call["cmd"] for call in fake_runner.calls)
    key_path = Path(decrypt[decrypt.index("-out") + 1])
    assert not key_path.exists()
    assert import_[-1] == str(key_path)
    assert sign[:5] == ["dpkg-sig", "--sign", "builder", "-k", "445C1350"]


def test_decryption_password_travels_through_environment(archive, signing_context, fake_runner):
    PackageSigner().sign(archive, signing_context)

    decrypt = fake_runner.calls[0]
    assert "open-sesame" not in " ".join(decrypt["cmd"])
    assert decrypt["env"] == {PASSWORD_ENV: "open-sesame"}
    assert decrypt["secrets"] == ["open-sesame"]


def test_signature_password_is_marked_secret(archive, signing_context, fake_runner):
    PackageSigner().sign(archive, signing_context)

    sign = fake_runner.calls[-1]
    assert "hunter2" not in " ".join(sign["cmd"])
    assert sign["secrets"] == ["hunter2"]


def test_passphrase_with_spaces_reaches_gpg_through_private_file(archive, signing_context, fake_runner):
    context = replace(signing_context, signature_password="correct horse battery")

    PackageSigner().sign(archive, context)

    sign = fake_runner.calls[-1]["cmd"]
    gpg_options = sign[sign.index("-g") + 1].split()
    assert "correct" not in gpg_options
    passphrase_file = Path(gpg_options[gpg_options.index("--passphrase-file") + 1])
    assert fake_runner.passphrase == "correct horse battery"
    assert not passphrase_file.exists()
    assert not passphrase_file.parent.exists()
    assert _leftovers(archive) == []


def test_passphrase_file_is_removed_when_signing_fails(archive, signing_context, fake_runner):
    fake_runner.fail("dpkg-sig")

    with pytest.raises(SignError):
        PackageSigner().sign(archive, signing_context)

    sign = fake_runner.calls[-1]["cmd"]
    gpg_options = sign[sign.index("-g") + 1].split()
    assert not Path(gpg_options[gpg_options.index("--passphrase-file") + 1]).exists()


def test_passphrase_file_is_owner_only(tmp_path):
    path = write_private_file(tmp_path / "passphrase", "correct horse battery")

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert path.read_text(encoding="utf-8") == "correct horse battery"


def test_unwritable_workspace_raises_signing_error(archive, signing_context, fake_runner, monkeypatch):
    from connector2deb import signer

    def refuse(prefix="connector2deb-", parent=None):
        raise PermissionError(13, "Permission denied", str(parent))

    monkeypatch.setattr(signer, "create_temp_dir", refuse)

    with pytest.raises(SigningError, match="signing workspace"):
        PackageSigner().sign(archive, signing_context)
    assert fake_runner.calls == []
    assert archive.read_bytes() == b"!<arch>\nunsigned"


def test_workspace_permission_failure_cleans_up(archive, signing_context, fake_runner, monkeypatch):
    from connector2deb import signer

    def refuse(path, mode):
        raise PermissionError(1, "Operation not permitted", str(path))

    monkeypatch.setattr(signer.os, "chmod", refuse)

    with pytest.raises(SigningError, match="signing workspace"):
        PackageSigner().sign(archive, signing_context)
    assert _leftovers(archive) == []


def test_wrong_password_aborts_before_import(archive, signing_context, fake_runner):
    fake_runner.fail("openssl", returncode=1, output=["bad decrypt"])

    with pytest.raises(DecryptError) as excinfo:
        PackageSigner().sign(archive, signing_context)

    assert excinfo.value.stage is SigningState.DECRYPTING
    assert excinfo.value.output == ["bad decrypt"]
    assert fake_runner.tools() == ["openssl"]
    assert archive.read_bytes() == b"!<arch>\nunsigned"
    assert _leftovers(archive) == []


def test_missing_decryption_password(archive, signing_context, fake_runner):
    context = SigningContext(encrypted_key_path=signing_context.encrypted_key_path)

    with pytest.raises(DecryptError):
        PackageSigner().sign(archive, context)
    assert fake_runner.calls == []


def test_import_failure_removes_decrypted_key(archive, signing_context, fake_runner):
    fake_runner.fail("gpg")

    with pytest.raises(KeyImportError):
        PackageSigner().sign(archive, signing_context)

    key_path = Path(fake_runner.calls[0]["cmd"][fake_runner.calls[0]["cmd"].index("-out") + 1])
    assert not key_path.exists()
    assert _leftovers(archive) == []


def test_sign_failure_leaves_archive_untouched(archive, signing_context, fake_runner):
    fake_runner.fail("dpkg-sig", returncode=2, output=["gpg: signing failed: Bad passphrase"])

    with pytest.raises(SignError) as excinfo:
        PackageSigner().sign(archive, signing_context)

    assert excinfo.value.returncode == 2
    assert archive.read_bytes() == b"!<arch>\nunsigned"
    assert _leftovers(archive) == []


def test_missing_tools_are_reported(archive, signing_context, fake_runner, monkeypatch):
    from connector2deb import signer

    monkeypatch.setattr(signer, "command_exists", lambda tool: tool != "dpkg-sig")

    with pytest.raises(SigningError, match="dpkg-sig"):
        PackageSigner().sign(archive, signing_context)
    assert fake_runner.calls == []


def test_context_repr_hides_passwords(signing_context):
    text = repr(signing_context)

    assert "open-sesame" not in text
    assert "hunter2" not in text


def test_signing_failure_aborts_build(options, signing_context, fake_runner):
    options.encrypted_gpg_key_path = signing_context.encrypted_key_path
    fake_runner.fail("openssl", returncode=1, output=["bad decrypt"])
    context = ConnectorPackageBuilder().prepare(options)

    with pytest.raises(DecryptError):
        ConnectorPackageBuilder().build(options)

    assert context.package_path.read_bytes() == b"!<arch>\nunsigned"
    assert not context.stage_path.exists()


def test_build_signs_when_key_present(options, signing_context, fake_runner):
    options.encrypted_gpg_key_path = signing_context.encrypted_key_path

    result = ConnectorPackageBuilder().build(options)

    assert result.signing.signed
    assert fake_runner.tools() == ["dpkg", "openssl", "gpg", "dpkg-sig"]
    assert result.package_path.read_bytes() == b"!<arch>\nunsigned+signed"
