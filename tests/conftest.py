"""Shared fixtures: a fake otool/install_name_tool working on real files."""

import copy
import os
import stat
from pathlib import Path

import pytest

from macembed import BundleLayout, InspectionError, LibraryEmbedder, PatchError

# Mach-O 64-bit magic number for creating fake binaries
MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"

SYSTEM_LIB = "/usr/lib/libSystem.B.dylib"


def create_fake_macho(path: Path, mode: int = 0o755) -> None:
    """Create a fake Mach-O file whose content is unique to its name."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(MACHO_MAGIC_64 + path.name.encode() + b"\x00" * 64)
    path.chmod(mode)


class FakeToolchain:
    """In-memory stand-in for `otool -L` and `install_name_tool`.

    Load commands are kept per file path. A file copied into a bundle
    starts out with the load commands of the registered file sharing its
    name, the way a real copy carries its Mach-O header along.
    """

    def __init__(self):
        self.binaries: dict[str, dict] = {}
        self.patches: list[tuple[str, str, str]] = []
        self.fail_patch: set[str] = set()
        self.fail_inspect: set[str] = set()

    def add(
        self,
        path: Path,
        deps: list[str] | None = None,
        identity: str | None = None,
        mode: int = 0o755,
    ) -> Path:
        create_fake_macho(path, mode)
        self.binaries[str(path)] = {"id": identity, "deps": list(deps or [])}
        return path

    def add_lib(
        self, path: Path, deps: list[str] | None = None, mode: int = 0o755
    ) -> Path:
        """Register a library whose install name is its own path."""
        return self.add(path, deps, identity=str(path), mode=mode)

    def entry(self, path: Path) -> dict:
        key = str(path)
        if key not in self.binaries:
            path = Path(path)
            for source, entry in list(self.binaries.items()):
                if Path(source).name == path.name and path.exists():
                    self.binaries[key] = copy.deepcopy(entry)
                    break
            else:
                raise InspectionError(f"Not a known binary: {path}")
        return self.binaries[key]

    # BinaryInspector

    def dependency_lines(self, path: Path) -> list[str]:
        if Path(path).name in self.fail_inspect:
            raise InspectionError(f"otool failed on {path}")
        entry = self.entry(path)
        lines = [f"{path}:"]
        names = ([entry["id"]] if entry["id"] else []) + entry["deps"]
        for name in names:
            lines.append(
                f"\t{name} (compatibility version 1.0.0, "
                "current version 1.0.0)"
            )
        return lines

    # BinaryPatcher

    def _check_writable(self, binary: Path) -> None:
        if not os.stat(binary).st_mode & stat.S_IWUSR:
            raise PatchError(f"{binary} is not writable")
        if Path(binary).name in self.fail_patch:
            raise PatchError(f"install_name_tool failed on {binary}")

    def set_identity(self, binary: Path, new_path: str) -> None:
        self._check_writable(binary)
        self.entry(binary)["id"] = new_path
        self.patches.append(("id", Path(binary).name, new_path))

    def change_reference(
        self, binary: Path, old_path: str, new_path: str
    ) -> None:
        self._check_writable(binary)
        entry = self.entry(binary)
        entry["deps"] = [new_path if d == old_path else d for d in entry["deps"]]
        self.patches.append(("change", Path(binary).name, new_path))


@pytest.fixture
def toolchain():
    """A fresh fake toolchain."""
    return FakeToolchain()


@pytest.fixture
def prefix(tmp_path):
    """A package-manager prefix with an empty lib directory."""
    path = tmp_path / "prefix"
    (path / "lib").mkdir(parents=True)
    return path


@pytest.fixture
def bundle(tmp_path):
    """An application bundle path with its MacOS directory."""
    path = tmp_path / "App.app"
    (path / "Contents" / "MacOS").mkdir(parents=True)
    return path


@pytest.fixture
def make_embedder(bundle, prefix, toolchain):
    """Factory for LibraryEmbedder instances wired to the fake toolchain."""

    def factory(extra_libs=None):
        return LibraryEmbedder(
            BundleLayout(bundle),
            str(prefix),
            toolchain,
            toolchain,
            extra_libs=extra_libs,
        )

    return factory
