from pathlib import Path

import pytest

from bootimage.lib.assemble import deploy_artifacts


def test_copies_to_boot_paths(tmp_path: Path):
    loader = tmp_path / "loader.efi"
    kernel = tmp_path / "kernel"
    loader.write_bytes(b"MZ-loader")
    kernel.write_bytes(b"\x7fELF-kernel")
    mnt = tmp_path / "mnt"
    mnt.mkdir()

    out = deploy_artifacts(loader=loader, kernel=kernel, mount_point=mnt, settle_seconds=0)

    assert out.loader == mnt / "EFI" / "BOOT" / "BOOTx64.EFI"
    assert out.kernel == mnt / "kernel"
    assert out.loader.read_bytes() == loader.read_bytes()
    assert out.kernel.read_bytes() == kernel.read_bytes()


def test_missing_artifact(tmp_path: Path):
    (tmp_path / "kernel").write_bytes(b"k")
    with pytest.raises(FileNotFoundError):
        deploy_artifacts(
            loader=tmp_path / "loader.efi",
            kernel=tmp_path / "kernel",
            mount_point=tmp_path / "mnt",
            settle_seconds=0,
        )
    assert not (tmp_path / "mnt").exists()
