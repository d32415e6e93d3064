#!/usr/bin/env python3
"""macembed - make a compiled macOS application bundle self-contained.

This module provides tools for:
1. Embedding the non-system dynamic libraries an application links against
   inside its bundle and relinking every binary to the embedded copies
2. Embedding a compiler-runtime plugin tree (e.g. libgccjit) inside the bundle

Libraries are discovered by walking the Mach-O load commands of the main
executable and, transitively, of every copied library. Only references that
start with the configured package-manager prefix (e.g. ``/opt/homebrew``)
are embedded; everything else is left alone as a system reference.

Usage (CLI):
    # Embed Homebrew libraries into an application bundle
    macembed embed Emacs.app -p /opt/homebrew

    # Force-embed a dynamically loaded plugin and the gcc JIT runtime
    macembed embed Emacs.app -x /opt/homebrew/lib/libfoo.dylib \\
        --gcc-root /opt/homebrew/opt/libgccjit

    # Check that no prefix references remain
    macembed verify Emacs.app -p /opt/homebrew

Usage (API):
    from macembed import EmbedConfig, embed_bundle

    config = EmbedConfig(bundle=Path("Emacs.app"), prefix="/opt/homebrew")
    embed_bundle(config)
"""

import argparse
import datetime
import logging
import os
import plistlib
import posixpath
import re
import shutil
import stat
import struct
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
)
from macholib.MachO import MachO
from macholib.ptypes import sizeof

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Library directory, relative to the directory holding the executable
LIB_DIR_SUBPATH = "../lib"

# Suffix of the inner executable when the main one is a launcher
SPLIT_EXECUTABLE_SUFFIX = "-bin"

# Load path root used for every rewritten reference
EXECUTABLE_PATH = "@executable_path"

# Compiler runtime defaults
DEFAULT_RUNTIME_TOOLCHAIN = "gcc"
DEFAULT_RUNTIME_PLUGIN = "libgccjit.0.dylib"
RUNTIME_TARGET_SUBDIR = "gcc"

# Finder and AppleDouble files never copied into the bundle
METADATA_ARTIFACTS = (".DS_Store", "._*")

# Locations that always hold system libraries
SYSTEM_LIBRARY_PREFIXES = ("/usr/lib/", "/System/Library/")

# Environment variable names
ENV_PREFIX = "MACEMBED_PREFIX"
ENV_GCC_ROOT = "MACEMBED_GCC_ROOT"
ENV_EXTRA_LIBS = "MACEMBED_EXTRA_LIBS"

# Load commands that carry a dylib path
DYLIB_COMMANDS = {
    LC_ID_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LAZY_LOAD_DYLIB,
}

# One dependency line of `otool -L`:
#   "\t/opt/homebrew/lib/libfoo.1.dylib (compatibility version 2.0.0, ...)"
DEPENDENCY_LINE = re.compile(r"^\s+(?P<path>\S.*?) \([^()]*\)\s*$")

# Runtime version directory names: ASCII digits only
VERSION_NAME = re.compile(r"[0-9]+")

# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for macembed errors."""


class CommandError(BundlerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class MissingInputError(BundlerError):
    """Exception raised when a bundle, binary or input directory is absent."""


class InspectionError(BundlerError):
    """Exception raised when the dependencies of a binary cannot be read."""


class PatchError(BundlerError):
    """Exception raised when a load path cannot be rewritten."""


class CopyError(BundlerError):
    """Exception raised when a library or tree cannot be copied."""


class VersionResolutionError(BundlerError):
    """Exception raised when no usable runtime version directory exists."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class ValidationError(BundlerError):
    """Exception raised when validation fails."""


# ----------------------------------------------------------------------------
# Configuration


@dataclass(frozen=True)
class EmbedConfig:
    """Everything one embedding run needs, resolved once at startup.

    Args:
        bundle: Path to the .app bundle
        prefix: Package-manager prefix marking embeddable libraries
        extra_libs: Libraries to embed even if nothing links them
        executable_name: Executable under Contents/MacOS (default: from
            Info.plist, else the bundle name)
        runtime_root: Installation root of the compiler runtime, or None
            to skip runtime embedding
        runtime_toolchain: Directory name under <runtime_root>/lib
        runtime_plugin: File a runtime version directory must contain
        inspector: "otool" or "macholib"
    """

    bundle: Path
    prefix: str
    extra_libs: tuple[Path, ...] = field(default_factory=tuple)
    executable_name: str | None = None
    runtime_root: Path | None = None
    runtime_toolchain: str = DEFAULT_RUNTIME_TOOLCHAIN
    runtime_plugin: str = DEFAULT_RUNTIME_PLUGIN
    inspector: str = "otool"


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macembed.toml in current directory
    3. macembed.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but cannot be parsed

    Example .macembed.toml:
        [embed]
        prefix = "/opt/homebrew"
        extra_libs = ["/opt/homebrew/lib/libtree-sitter.dylib"]
        gcc_root = "/opt/homebrew/opt/libgccjit"
        gcc_toolchain = "gcc"
        gcc_plugin = "libgccjit.0.dylib"
    """
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macembed.toml",
            cwd / "macembed.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(
                    f"Cannot read config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "embed")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_list(
    config: dict[str, object], section: str, key: str
) -> list[str]:
    """Get a list of strings from config with section.key lookup.

    Raises:
        ConfigurationError: If the value is not a list of strings
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return []
    value = section_config.get(key, [])
    if not isinstance(value, list) or not all(
        isinstance(item, str) for item in value
    ):
        raise ConfigurationError(f"[{section}] {key} must be a list of paths")
    return value


# ----------------------------------------------------------------------------
# File validation

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}


def validate_file(path: Pathlike, check_macho: bool = False) -> None:
    """Validate a file before copying it into the bundle.

    Checks that the file exists, is a regular file (not a device, socket,
    etc.), is readable and non-empty, and optionally that it starts with a
    Mach-O magic number. Symlinks are resolved by the caller.

    Args:
        path: Path to the file to validate
        check_macho: If True, verify the file is a valid Mach-O binary

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.exists():
        raise ValidationError(f"File does not exist: {path}")

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")

    if check_macho and not is_valid_macho(path):
        raise ValidationError(f"File is not a valid Mach-O binary: {path}")


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file is a valid Mach-O binary.

    Args:
        path: Path to the file to check

    Returns:
        True if the file starts with a Mach-O magic number, False otherwise
    """
    path = Path(path)
    if not path.exists() or not path.is_file():
        return False

    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def is_system_library(path: str) -> bool:
    """Check if a load path points at a system library location."""
    return path.startswith(SYSTEM_LIBRARY_PREFIXES)


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False; blocks until the command exits.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


class ProcessRunner:
    """Blocking invocation of external commands."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, command: list[str]) -> str:
        """Run a command and return its stdout.

        Raises:
            CommandError: If the command fails
        """
        return run_command(command, log=self.log)


def detect_prefix(runner: ProcessRunner) -> str:
    """Ask Homebrew for its installation prefix.

    Raises:
        ConfigurationError: If `brew --prefix` cannot be run
    """
    try:
        prefix = runner.run(["brew", "--prefix"]).strip()
    except CommandError as e:
        raise ConfigurationError(
            f"Cannot determine the package prefix ({e}); pass --prefix"
        ) from e
    if not prefix:
        raise ConfigurationError("`brew --prefix` returned nothing")
    return prefix


# ----------------------------------------------------------------------------
# Binary inspection and patching


@dataclass(frozen=True)
class DependencyRef:
    """A load path declared by a binary."""

    path: str

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)


def parse_dependency_line(line: str) -> DependencyRef | None:
    """Parse one `otool -L` line.

    Returns None for lines that do not declare a dependency (the header
    naming the binary, architecture headers, blank lines).
    """
    match = DEPENDENCY_LINE.match(line)
    if not match:
        return None
    return DependencyRef(match.group("path"))


class OtoolInspector:
    """Reads dependency lines with `otool -L`."""

    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    def dependency_lines(self, path: Path) -> list[str]:
        """Return the raw dependency lines of a binary.

        Raises:
            InspectionError: If otool fails
        """
        try:
            output = self.runner.run(["otool", "-L", str(path)])
        except CommandError as e:
            raise InspectionError(
                f"Cannot read dependencies of {path}: {e}"
            ) from e
        return output.splitlines()


def _load_command_name(lc: object, cmd: object, data: bytes) -> str:
    """Extract the path string of a dylib load command."""
    ofs = cmd.name - sizeof(lc.__class__) - sizeof(cmd.__class__)
    return data[ofs : data.find(b"\x00", ofs)].decode(
        sys.getfilesystemencoding()
    )


class MachOInspector:
    """Reads dependency lines from Mach-O load commands with macholib.

    The lines are rendered in `otool -L` format so both inspectors feed the
    same parser. Works on hosts without the Xcode command line tools.
    """

    def dependency_lines(self, path: Path) -> list[str]:
        """Return the raw dependency lines of a binary.

        Raises:
            InspectionError: If the file is not a readable Mach-O binary
        """
        try:
            macho = MachO(str(path))
        except (OSError, ValueError, struct.error) as e:
            raise InspectionError(
                f"Cannot read dependencies of {path}: {e}"
            ) from e

        lines = [f"{path}:"]
        for header in macho.headers:
            for lc, cmd, data in header.commands:
                if lc.cmd not in DYLIB_COMMANDS:
                    continue
                lines.append(
                    "\t%s (compatibility version %s, current version %s)"
                    % (
                        _load_command_name(lc, cmd, data),
                        cmd.compatibility_version,
                        cmd.current_version,
                    )
                )
        return lines


class InstallNameTool:
    """Rewrites load paths in place with `install_name_tool`."""

    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    def set_identity(self, binary: Path, new_path: str) -> None:
        """Change the install name (LC_ID_DYLIB) of a library.

        Raises:
            PatchError: If install_name_tool fails
        """
        command = ["install_name_tool", "-id", new_path, str(binary)]
        try:
            self.runner.run(command)
        except CommandError as e:
            raise PatchError(
                f"Failed to change identity of {binary}: {e}"
            ) from e

    def change_reference(
        self, binary: Path, old_path: str, new_path: str
    ) -> None:
        """Change one dependency path of a binary.

        Raises:
            PatchError: If install_name_tool fails
        """
        command = [
            "install_name_tool",
            "-change",
            old_path,
            new_path,
            str(binary),
        ]
        try:
            self.runner.run(command)
        except CommandError as e:
            raise PatchError(
                f"Failed to change {old_path} in {binary}: {e}"
            ) from e


def make_inspector(
    kind: str, runner: ProcessRunner
) -> OtoolInspector | MachOInspector:
    """Create the inspector named by the configuration."""
    if kind == "otool":
        return OtoolInspector(runner)
    if kind == "macholib":
        return MachOInspector()
    raise ConfigurationError(f"Unknown inspector: {kind}")


class WritableFile:
    """Temporarily grants owner write permission on a file.

    The original mode is restored when the block exits, whether or not it
    raised.

    Example:
        with WritableFile(path):
            patcher.set_identity(path, new_path)
    """

    def __init__(self, path: Pathlike):
        self.path = Path(path)
        self.mode: int | None = None

    def __enter__(self) -> "WritableFile":
        try:
            mode = stat.S_IMODE(os.stat(self.path).st_mode)
            os.chmod(self.path, mode | stat.S_IWUSR)
        except OSError as e:
            raise PatchError(f"Cannot make {self.path} writable: {e}") from e
        self.mode = mode
        return self

    def __exit__(self, *args: object) -> None:
        if self.mode is not None:
            os.chmod(self.path, self.mode)


# ----------------------------------------------------------------------------
# Bundle layout


class BundleLayout:
    """Path logic of an application bundle.

    Args:
        bundle: Path to the .app bundle
        executable_name: Name of the executable in Contents/MacOS; read from
            Info.plist (CFBundleExecutable) when omitted, falling back to the
            bundle name

    Raises:
        MissingInputError: If the bundle does not exist
    """

    def __init__(self, bundle: Pathlike, executable_name: str | None = None):
        self.bundle = Path(bundle)
        if not self.bundle.is_dir():
            raise MissingInputError(f"Bundle does not exist: {self.bundle}")

        self.contents = self.bundle / "Contents"
        self.macos = self.contents / "MacOS"
        self.info_plist = self.contents / "Info.plist"
        self.lib_dir = Path(
            os.path.normpath(self.macos / LIB_DIR_SUBPATH)
        )
        self.executable = self.macos / (
            executable_name or self._read_executable_name()
        )

    def _read_executable_name(self) -> str:
        if self.info_plist.exists():
            try:
                with open(self.info_plist, "rb") as f:
                    info = plistlib.load(f)
            except (OSError, plistlib.InvalidFileException) as e:
                raise ConfigurationError(
                    f"Cannot read {self.info_plist}: {e}"
                ) from e
            name = info.get("CFBundleExecutable")
            if isinstance(name, str) and name:
                return name
        return self.bundle.stem

    def target_binary(self) -> Path:
        """The binary to patch: the split inner executable if present."""
        inner = self.executable.with_name(
            self.executable.name + SPLIT_EXECUTABLE_SUFFIX
        )
        if inner.exists():
            return inner
        return self.executable

    def relative_anchor(self, binary: Path) -> str:
        """Relative path from a binary's directory to the library directory."""
        return Path(os.path.relpath(self.lib_dir, binary.parent)).as_posix()

    def libraries(self) -> list[Path]:
        """Mach-O files directly inside the library directory, sorted."""
        if not self.lib_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.lib_dir.iterdir()
            if path.is_file() and not path.is_symlink() and is_valid_macho(path)
        )


def anchored_path(anchor: str, name: str) -> str:
    """Build the `@executable_path/<anchor>/<name>` load path."""
    if anchor in ("", "."):
        return posixpath.join(EXECUTABLE_PATH, name)
    return posixpath.join(EXECUTABLE_PATH, anchor, name)


def copy_library(source: Path, target: Path) -> None:
    """Copy a library into the bundle, following symlinks.

    Raises:
        MissingInputError: If the source does not exist
        CopyError: If the source is not a valid Mach-O file or copying fails
    """
    if not source.exists():
        raise MissingInputError(f"Library does not exist: {source}")
    real_source = source.resolve()
    try:
        validate_file(real_source, check_macho=True)
    except ValidationError as e:
        raise CopyError(f"Refusing to embed {source}: {e}") from e
    try:
        shutil.copy2(real_source, target)
    except OSError as e:
        raise CopyError(f"Failed to copy {source} to {target}: {e}") from e


# ----------------------------------------------------------------------------
# Library embedding


class LibraryEmbedder:
    """Embeds prefix libraries inside a bundle and relinks every binary.

    The walk starts at the bundle's executable and follows every dependency
    under ``prefix``. Each library is copied once, keyed by basename, and
    every reference to it is rewritten to an ``@executable_path`` path.

    Args:
        layout: The bundle layout
        prefix: Libraries whose path starts with this are embedded
        inspector: Object with dependency_lines(path)
        patcher: Object with set_identity() and change_reference()
        extra_libs: Libraries to embed even if nothing links them

    Example:
        runner = ProcessRunner()
        embedder = LibraryEmbedder(
            BundleLayout("Emacs.app"),
            "/opt/homebrew",
            OtoolInspector(runner),
            InstallNameTool(runner),
        )
        embedder.embed()
    """

    def __init__(
        self,
        layout: BundleLayout,
        prefix: str,
        inspector: OtoolInspector | MachOInspector,
        patcher: InstallNameTool,
        extra_libs: list[Pathlike] | tuple[Pathlike, ...] | None = None,
    ):
        if not prefix:
            raise ConfigurationError("Library prefix must not be empty")
        self.layout = layout
        self.prefix = prefix
        self.inspector = inspector
        self.patcher = patcher
        self.extra_libs = [Path(p) for p in (extra_libs or [])]
        self.embedded: set[str] = set()
        self.sources: dict[str, str] = {}
        self.copied: list[Path] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def embed(self) -> None:
        """Embed and relink all libraries of the bundle.

        Raises:
            BundlerError: On the first failing step; changes already made
                to the bundle are kept
        """
        binary = self.layout.target_binary()
        if not binary.exists():
            raise MissingInputError(f"Executable does not exist: {binary}")

        self.embedded = set()
        self.sources = {}
        self.copied = []
        anchor = self.layout.relative_anchor(binary)
        try:
            self.layout.lib_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CopyError(
                f"Failed to create library directory: {e}"
            ) from e

        self.log.info("Embedding libraries for %s", binary)
        self.copy_libs(binary, anchor)
        self.copy_extra_libs(anchor)
        self.self_ref_libs(binary, anchor)
        self.log.info(
            "Embedded %d libraries (%d copied)",
            len(self.embedded),
            len(self.copied),
        )

    def dependencies(self, binary: Path) -> list[DependencyRef]:
        """Parsed dependencies of a binary, in declaration order."""
        deps: list[DependencyRef] = []
        for line in self.inspector.dependency_lines(binary):
            dep = parse_dependency_line(line)
            # fat binaries list each architecture
            if dep is not None and dep not in deps:
                deps.append(dep)
        return deps

    def copy_libs(self, binary: Path, anchor: str) -> None:
        """Relink a binary and embed its prefix dependencies transitively."""
        pending = [binary]
        while pending:
            current = pending.pop()
            for dep in self.dependencies(current):
                if not dep.path.startswith(self.prefix):
                    continue

                new_path = anchored_path(anchor, dep.name)
                if dep.name == current.name:
                    self._set_identity(current, new_path)
                    continue
                self._change_reference(current, dep.path, new_path)

                if dep.name in self.embedded:
                    self._check_collision(Path(dep.path))
                    continue
                pending.append(self._embed_file(Path(dep.path)))

    def copy_extra_libs(self, anchor: str) -> None:
        """Embed the explicitly requested libraries and their dependencies."""
        for source in self.extra_libs:
            target = self._embed_file(source)
            self._set_identity(target, anchored_path(anchor, target.name))
            self.copy_libs(target, anchor)

    def self_ref_libs(self, binary: Path, anchor: str) -> None:
        """Redirect leftover references to libraries already in the bundle.

        A library walked before one of its dependencies was embedded under
        another path (an @rpath reference, a previous run) keeps pointing
        outside the bundle; this pass closes those edges.
        """
        libraries = self.layout.libraries()
        known = self.embedded | {lib.name for lib in libraries}
        bundled = anchored_path(anchor, "")

        for current in [binary, *libraries]:
            for dep in self.dependencies(current):
                if dep.name not in known:
                    continue
                if dep.path.startswith(bundled) or is_system_library(dep.path):
                    continue

                new_path = anchored_path(anchor, dep.name)
                if dep.name == current.name:
                    self._set_identity(current, new_path)
                else:
                    self._change_reference(current, dep.path, new_path)

    def _check_collision(self, source: Path) -> None:
        """Warn when a different file shares the name of an embedded one."""
        real = os.path.realpath(source)
        first = self.sources.setdefault(source.name, real)
        if first != real:
            # only the first file with a given name is embedded
            self.log.warning(
                "%s is not embedded: %s already provides %s",
                source,
                first,
                source.name,
            )

    def _embed_file(self, source: Path) -> Path:
        if source.name in self.embedded:
            self._check_collision(source)
        else:
            self.sources[source.name] = os.path.realpath(source)
        target = self.layout.lib_dir / source.name
        if target.exists():
            if source.name not in self.embedded:
                self.log.debug("%s already in bundle", source.name)
        else:
            self.log.info("Copying %s", source)
            copy_library(source, target)
            self.copied.append(target)
        self.embedded.add(source.name)
        return target

    def _set_identity(self, binary: Path, new_path: str) -> None:
        self.log.debug("%s: id -> %s", binary.name, new_path)
        with WritableFile(binary):
            self.patcher.set_identity(binary, new_path)

    def _change_reference(
        self, binary: Path, old_path: str, new_path: str
    ) -> None:
        self.log.debug("%s: %s -> %s", binary.name, old_path, new_path)
        with WritableFile(binary):
            self.patcher.change_reference(binary, old_path, new_path)


def find_unresolved_references(
    layout: BundleLayout,
    prefix: str,
    inspector: OtoolInspector | MachOInspector,
) -> list[tuple[Path, str]]:
    """List (binary, path) pairs in the bundle still pointing into prefix."""
    unresolved = []
    for binary in [layout.target_binary(), *layout.libraries()]:
        for line in inspector.dependency_lines(binary):
            dep = parse_dependency_line(line)
            if dep is not None and dep.path.startswith(prefix):
                if (binary, dep.path) not in unresolved:
                    unresolved.append((binary, dep.path))
    return unresolved


# ----------------------------------------------------------------------------
# Compiler runtime embedding


@dataclass(frozen=True)
class RuntimeInstall:
    """A resolved compiler-runtime plugin tree."""

    root: Path
    version: str
    toolchain: str = DEFAULT_RUNTIME_TOOLCHAIN
    plugin: str = DEFAULT_RUNTIME_PLUGIN

    @property
    def version_dir(self) -> Path:
        return self.root / "lib" / self.toolchain / self.version


def resolve_runtime(
    root: Pathlike,
    toolchain: str = DEFAULT_RUNTIME_TOOLCHAIN,
    plugin: str = DEFAULT_RUNTIME_PLUGIN,
) -> RuntimeInstall:
    """Find the highest numeric version directory containing the plugin.

    Version directories are compared by numeric value, so "13" wins over
    "9"; non-numeric names such as "current" are ignored.

    Raises:
        MissingInputError: If <root>/lib/<toolchain> does not exist
        VersionResolutionError: If no version directory holds the plugin
    """
    root = Path(root)
    toolchain_dir = root / "lib" / toolchain
    if not toolchain_dir.is_dir():
        raise MissingInputError(
            f"Runtime directory does not exist: {toolchain_dir}"
        )

    versions = [
        entry.name
        for entry in toolchain_dir.iterdir()
        if VERSION_NAME.fullmatch(entry.name)
        and entry.is_dir()
        and (entry / plugin).exists()
    ]
    if not versions:
        raise VersionResolutionError(
            f"No version directory in {toolchain_dir} contains {plugin}"
        )
    return RuntimeInstall(
        root=root,
        version=max(versions, key=int),
        toolchain=toolchain,
        plugin=plugin,
    )


class CompilerRuntimeEmbedder:
    """Copies a compiler-runtime plugin tree into the bundle.

    The runtime finds its plugins by scanning its own directory, so the
    tree is copied whole and no load path is rewritten.
    """

    def __init__(self, layout: BundleLayout, runtime: RuntimeInstall):
        self.layout = layout
        self.runtime = runtime
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def target_dir(self) -> Path:
        return self.layout.lib_dir / RUNTIME_TARGET_SUBDIR / self.runtime.version

    def is_embedded(self) -> bool:
        return (self.target_dir / self.runtime.plugin).exists()

    def embed(self) -> None:
        """Copy the runtime tree unless it is already embedded.

        Raises:
            CopyError: If the tree cannot be copied
        """
        if self.is_embedded():
            self.log.info(
                "%s %s already embedded",
                self.runtime.toolchain,
                self.runtime.version,
            )
            return

        self.log.info(
            "Embedding %s into %s", self.runtime.version_dir, self.target_dir
        )
        try:
            shutil.copytree(
                self.runtime.version_dir,
                self.target_dir,
                ignore=shutil.ignore_patterns(*METADATA_ARTIFACTS),
                dirs_exist_ok=True,
            )
        except (OSError, shutil.Error) as e:
            raise CopyError(
                f"Failed to copy {self.runtime.version_dir}: {e}"
            ) from e


# ----------------------------------------------------------------------------
# Functional API


def embed_bundle(
    config: EmbedConfig, runner: ProcessRunner | None = None
) -> BundleLayout:
    """Make a bundle self-contained.

    Embeds and relinks the prefix libraries, then the compiler runtime if
    config.runtime_root is set.

    Args:
        config: The embedding configuration
        runner: Command runner (default: a new ProcessRunner)

    Returns:
        The layout of the processed bundle

    Example:
        embed_bundle(EmbedConfig(Path("Emacs.app"), "/opt/homebrew"))
    """
    runner = runner or ProcessRunner()
    layout = BundleLayout(config.bundle, config.executable_name)
    embedder = LibraryEmbedder(
        layout,
        config.prefix,
        make_inspector(config.inspector, runner),
        InstallNameTool(runner),
        config.extra_libs,
    )
    embedder.embed()

    if config.runtime_root is not None:
        runtime = resolve_runtime(
            config.runtime_root,
            config.runtime_toolchain,
            config.runtime_plugin,
        )
        CompilerRuntimeEmbedder(layout, runtime).embed()
    return layout


# ----------------------------------------------------------------------------
# Command-line interface


def build_config(
    args: argparse.Namespace,
    file_config: dict[str, object],
    environ: Mapping[str, str],
    runner: ProcessRunner,
) -> EmbedConfig:
    """Resolve the run configuration.

    Precedence: command line, environment, config file, then (for the
    prefix only) `brew --prefix`.
    """
    prefix = (
        args.prefix
        or environ.get(ENV_PREFIX)
        or get_config_value(file_config, "embed", "prefix")
        or detect_prefix(runner)
    )

    if getattr(args, "extra_lib", None):
        extra_libs = list(args.extra_lib)
    elif environ.get(ENV_EXTRA_LIBS):
        extra_libs = [
            p for p in environ[ENV_EXTRA_LIBS].split(os.pathsep) if p
        ]
    else:
        extra_libs = get_config_list(file_config, "embed", "extra_libs")

    runtime_root = (
        getattr(args, "gcc_root", None)
        or environ.get(ENV_GCC_ROOT)
        or get_config_value(file_config, "embed", "gcc_root")
    )

    config = EmbedConfig(
        bundle=Path(args.bundle),
        prefix=prefix,
        extra_libs=tuple(Path(p) for p in extra_libs),
        executable_name=getattr(args, "executable", None)
        or get_config_value(file_config, "embed", "executable"),
        runtime_root=Path(runtime_root) if runtime_root else None,
        inspector=getattr(args, "inspector", None)
        or get_config_value(file_config, "embed", "inspector", "otool")
        or "otool",
    )
    plugin = get_config_value(file_config, "embed", "gcc_plugin")
    if plugin:
        config = replace(config, runtime_plugin=plugin)
    toolchain = get_config_value(file_config, "embed", "gcc_toolchain")
    if toolchain:
        config = replace(config, runtime_toolchain=toolchain)
    return config


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "bundle",
        help="path to the .app bundle",
    )
    parser.add_argument(
        "-p",
        "--prefix",
        metavar="DIR",
        help=f"package prefix to embed from (or set {ENV_PREFIX}; "
        "default: `brew --prefix`)",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="configuration file (default: ./.macembed.toml)",
    )
    parser.add_argument(
        "--inspector",
        choices=["otool", "macholib"],
        help="how to read load commands (default: otool)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _load_args_config(args: argparse.Namespace) -> EmbedConfig:
    file_config = load_config(Path(args.config) if args.config else None)
    return build_config(args, file_config, os.environ, ProcessRunner())


def _cmd_embed(args: argparse.Namespace) -> None:
    """Handle 'embed' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macembed")

    config = _load_args_config(args)
    layout = embed_bundle(config)
    log.info("Embedded: %s", layout.bundle)


def _cmd_verify(args: argparse.Namespace) -> None:
    """Handle 'verify' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macembed")

    config = _load_args_config(args)
    runner = ProcessRunner()
    layout = BundleLayout(config.bundle, config.executable_name)
    unresolved = find_unresolved_references(
        layout, config.prefix, make_inspector(config.inspector, runner)
    )
    for binary, path in unresolved:
        log.warning("%s still references %s", binary, path)
    if unresolved:
        sys.exit(1)
    log.info("No references into %s remain", config.prefix)


def main() -> None:
    """Command line interface for macembed."""
    try:
        load_dotenv()

        parser = argparse.ArgumentParser(
            prog="macembed",
            description="Embed package-manager libraries in macOS app bundles.",
            epilog=(
                "Examples:\n"
                "  macembed embed Emacs.app\n"
                "  macembed embed Emacs.app -p /opt/homebrew -x libfoo.dylib\n"
                "  macembed verify Emacs.app\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- embed subcommand ---
        embed_parser = subparsers.add_parser(
            "embed",
            help="copy prefix libraries into the bundle and relink",
            description=(
                "Copy every prefix library the bundle needs into "
                "Contents/lib and rewrite load paths to point at the copies."
            ),
            epilog=(
                "Examples:\n"
                "  macembed embed Emacs.app -p /opt/homebrew\n"
                "  macembed embed Emacs.app -x /opt/homebrew/lib/libfoo.dylib\n"
                "  macembed embed Emacs.app --gcc-root /opt/homebrew/opt/libgccjit\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_common_options(embed_parser)
        embed_parser.add_argument(
            "-x",
            "--extra-lib",
            action="append",
            metavar="LIB",
            help="library to embed even if nothing links it (repeatable)",
        )
        embed_parser.add_argument(
            "-e",
            "--executable",
            metavar="NAME",
            help="executable in Contents/MacOS (default: from Info.plist)",
        )
        embed_parser.add_argument(
            "--gcc-root",
            metavar="DIR",
            help=f"embed the gcc JIT runtime from DIR (or set {ENV_GCC_ROOT})",
        )
        embed_parser.set_defaults(func=_cmd_embed)

        # --- verify subcommand ---
        verify_parser = subparsers.add_parser(
            "verify",
            help="report references that still point into the prefix",
            description="List bundle binaries still referencing the prefix.",
        )
        _add_common_options(verify_parser)
        verify_parser.add_argument(
            "-e",
            "--executable",
            metavar="NAME",
            help="executable in Contents/MacOS (default: from Info.plist)",
        )
        verify_parser.set_defaults(func=_cmd_verify)

        args = parser.parse_args()
        args.func(args)

    except BundlerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
