#!/usr/bin/env python3
"""macuniversal - merge x64 and arm64 macOS Electron apps into a universal app.

This module provides tools for:
1. Classifying and comparing the contents of two single-architecture bundles
2. Combining matched Mach-O executables into universal binaries with lipo
3. Repackaging the application code so the matching architecture loads at
   runtime, and merging Info.plist asar integrity records

Usage (CLI):
    # Merge two builds into a universal app
    macuniversal merge MyApp-x64.app MyApp-arm64.app -o MyApp.app

    # Show the architectures of a binary
    macuniversal archs MyApp.app/Contents/MacOS/MyApp

Usage (API):
    from macuniversal import make_universal_app

    make_universal_app(
        x64_app_path="/builds/x64/MyApp.app",
        arm64_app_path="/builds/arm64/MyApp.app",
        out_app_path="/builds/universal/MyApp.app",
        force=True,
    )
"""

import argparse
import enum
import fnmatch
import hashlib
import json
import logging
import os
import plistlib
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Prefix of `file --brief` output for Mach-O binaries
MACHO_PREFIX = "Mach-O "

# Architecture tags used for the relocated application code
X64_TAG = "x64"
ARM64_TAG = "arm64"

# Bundle layout
RESOURCES_DIR = Path("Contents", "Resources")
ASAR_NAME = "app.asar"
ASAR_UNPACKED_NAME = "app.asar.unpacked"
APP_DIR_NAME = "app"
INFO_PLIST_NAME = "Info.plist"
SNAPSHOT_SUFFIX = ".bin"
PACKAGE_JSON = "package.json"
LAUNCHER_NAME = "index.js"

# Info.plist integrity section and its keys
INTEGRITY_KEY = "ElectronAsarIntegrity"
INTEGRITY_ALGORITHM = "SHA256"
ASAR_INTEGRITY_PATH = "Resources/app.asar"
X64_ASAR_INTEGRITY_PATH = f"Resources/{X64_TAG}.{ASAR_NAME}"
ARM64_ASAR_INTEGRITY_PATH = f"Resources/{ARM64_TAG}.{ASAR_NAME}"

# Staging directory naming
TMP_PREFIX = "macuniversal-"
TMP_APP_NAME = "Tmp.app"
ENTRY_ASAR_DIR = "entry-asar"

# Per-file integrity blocks written into asar headers
ASAR_BLOCK_SIZE = 4 * 1024 * 1024

# Config file names searched in the current directory
CONFIG_FILENAMES = [".macuniversal.toml", "macuniversal.toml"]

LAUNCHER_JS = """\
const fs = require('fs');
const path = require('path');
const Module = require('module');
const { app } = require('electron');

const arch = process.arch === 'arm64' ? 'arm64' : 'x64';

let appPath = path.resolve(process.resourcesPath, `${arch}.app.asar`);
if (!fs.existsSync(appPath)) {
  appPath = path.resolve(process.resourcesPath, `${arch}.app`);
}

const packageJson = require(path.resolve(appPath, 'package.json'));

app.setAppPath(appPath);
Module._load(path.resolve(appPath, packageJson.main || 'index.js'), module, true);
"""

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macuniversal.toml in current directory
    3. macuniversal.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .macuniversal.toml:
        [merge]
        force = true
        exclude = ["Contents/Resources/arch-specific/*"]
    """
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                logging.getLogger("macuniversal").warning(
                    "ignoring unreadable config %s: %s", path, e
                )
                continue

    return {}


def _config_section(config: dict[str, object], section: str) -> dict:
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return {}
    return section_config


def get_config_bool(
    config: dict[str, object], section: str, key: str, default: bool = False
) -> bool:
    """Get a boolean value from config, falling back to default."""
    value = _config_section(config, section).get(key, default)
    if isinstance(value, bool):
        return value
    return default


def get_config_list(
    config: dict[str, object], section: str, key: str
) -> list[str]:
    """Get a list of strings from config (empty if missing or malformed)."""
    value = _config_section(config, section).get(key, [])
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


# ----------------------------------------------------------------------------
# Error handling


class UniversalError(Exception):
    """Base exception class for macuniversal errors."""


class CommandError(UniversalError):
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


class ConfigurationError(UniversalError):
    """Exception raised when inputs or configuration are invalid."""


class AsarError(UniversalError):
    """Exception raised when an asar archive cannot be read."""


class ValidationError(UniversalError):
    """Exception raised when the two apps cannot be merged."""


class FileSetMismatchError(ValidationError):
    """The two apps do not contain the same set of files."""

    def __init__(self, unique_to_x64: list[str], unique_to_arm64: list[str]):
        self.unique_to_x64 = unique_to_x64
        self.unique_to_arm64 = unique_to_arm64
        super().__init__(
            "The x64 and arm64 builds do not contain the same files "
            f"(unique to x64: {unique_to_x64}, "
            f"unique to arm64: {unique_to_arm64})"
        )


class ContentMismatchError(ValidationError):
    """A plain file differs between the two apps."""

    def __init__(self, relative_path: str, x64_sha: str, arm64_sha: str):
        self.relative_path = relative_path
        self.x64_sha = x64_sha
        self.arm64_sha = arm64_sha
        super().__init__(
            "Expected all non-binary files to have identical SHAs when "
            f'creating a universal build but "{relative_path}" did not '
            f"({x64_sha} != {arm64_sha})"
        )


class PlistMismatchError(ValidationError):
    """An Info.plist differs between the two apps."""

    def __init__(self, relative_path: str):
        self.relative_path = relative_path
        super().__init__(
            "Expected all Info.plist files to be identical when ignoring "
            "integrity when creating a universal build but "
            f'"{relative_path}" was not'
        )


class IntegrityError(ValidationError):
    """The asar integrity sections of the two apps are inconsistent."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Formats records as elapsed time, level, origin and message.

    With use_color, the level name is tinted by severity. One
    logging.Formatter per level is built up front; levels without a
    colour of their own use the plain layout.
    """

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: color.grey,
        logging.INFO: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.plain = logging.Formatter(self.layout())
        self.formatters: dict[int, logging.Formatter] = {}
        if use_color:
            self.formatters = {
                level: logging.Formatter(self.layout(level_color))
                for level, level_color in self.LEVEL_COLORS.items()
            }

    @classmethod
    def layout(cls, level_color: str | None = None) -> str:
        """Return the record layout, colored when level_color is given."""
        if level_color is None:
            return (
                "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - "
                "%(message)s"
            )
        c = cls.color
        return (
            f"{c.white}%(delta)s{c.reset} - "
            f"{level_color}%(levelname)s{c.reset} - "
            f"{c.white}%(name)s.%(funcName)s{c.reset} - "
            f"{c.grey}%(message)s{c.reset}"
        )

    @staticmethod
    def elapsed(record: logging.LogRecord) -> str:
        """Time since logging started, as HH:MM:SS."""
        minutes, seconds = divmod(int(record.relativeCreated // 1000), 60)
        hours, minutes = divmod(minutes, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def format(self, record: logging.LogRecord) -> str:
        record.delta = self.elapsed(record)
        formatter = self.formatters.get(record.levelno, self.plain)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Route all logging to stderr through CustomFormatter.

    Replaces any handlers installed by an earlier call, so the CLI can be
    invoked repeatedly in one process.
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str], log: logging.Logger | None = None
) -> str:
    """Run a command and return its output.

    Uses shell=False and blocks until the command exits. There is no
    timeout and no retry: a failing tool aborts the caller.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails
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


# ----------------------------------------------------------------------------
# Mach-O introspection


def binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary using macholib.

    Args:
        binary_path: Path to the binary file

    Returns:
        List of architecture strings (e.g., ["x86_64", "arm64"])
        Empty list if the file is missing or not a Mach-O binary
    """
    path = Path(binary_path)
    if not path.is_file():
        return []
    try:
        macho = MachO(str(path))
    except (OSError, ValueError, struct.error):
        return []
    archs = []
    for header in macho.headers:
        cputype = header.header.cputype
        archs.append(str(CPU_TYPE_NAMES.get(cputype, cputype)).lower())
    return archs


# ----------------------------------------------------------------------------
# External tools


class FileTypeProbe:
    """Describes files with `file --brief --no-pad`."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def describe(self, path: Pathlike) -> str:
        """Return the file(1) description of path."""
        output = run_command(
            ["file", "--brief", "--no-pad", str(path)], log=self.log
        )
        return output.strip()


class LipoCombiner:
    """Combines two thin Mach-O binaries into one universal binary."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def combine(
        self, x64_path: Pathlike, arm64_path: Pathlike, output: Pathlike
    ) -> None:
        """Run `lipo -create` on the pair, writing the result to output.

        Raises:
            CommandError: If lipo fails
        """
        run_command(
            [
                "lipo",
                str(x64_path),
                str(arm64_path),
                "-create",
                "-output",
                str(output),
            ],
            log=self.log,
        )
        archs = binary_architectures(output)
        self.log.debug("%s: %s", output, ", ".join(archs) or "unknown")


# ----------------------------------------------------------------------------
# Asar archives


@dataclass(frozen=True)
class AsarHeader:
    """The JSON header of an asar archive."""

    header_string: str
    header: dict
    header_size: int


def _align4(size: int) -> int:
    return (size + 3) & ~3


def file_integrity(path: Pathlike) -> dict[str, object]:
    """Integrity entry for one archive member.

    Holds the SHA-256 of the whole file plus one digest per
    ASAR_BLOCK_SIZE block. The trailing partial block is always hashed,
    so an empty file (or one ending on a block boundary) ends with the
    digest of an empty block.
    """
    file_hash = hashlib.sha256()
    blocks = []
    with open(path, "rb") as f:
        while True:
            block = f.read(ASAR_BLOCK_SIZE)
            file_hash.update(block)
            blocks.append(hashlib.sha256(block).hexdigest())
            if len(block) < ASAR_BLOCK_SIZE:
                break
    return {
        "algorithm": INTEGRITY_ALGORITHM,
        "hash": file_hash.hexdigest(),
        "blockSize": ASAR_BLOCK_SIZE,
        "blocks": blocks,
    }


class AsarArchiver:
    """Reads and writes Electron asar archives.

    An archive is an 8-byte size pickle holding the length of the header
    pickle, the header pickle (payload size, string length, UTF-8 JSON,
    zero padding to 4 bytes), then the concatenated file contents. File
    offsets in the header are decimal strings relative to the end of the
    header pickle.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def get_raw_header(self, archive: Pathlike) -> AsarHeader:
        """Read the header of an archive.

        Raises:
            AsarError: If the file is not an asar archive
        """
        with open(archive, "rb") as f:
            size_pickle = f.read(8)
            if len(size_pickle) != 8:
                raise AsarError(f"Truncated asar archive: {archive}")
            payload_size, header_size = struct.unpack("<II", size_pickle)
            if payload_size != 4:
                raise AsarError(f"Not an asar archive: {archive}")
            header_pickle = f.read(header_size)
        if len(header_pickle) != header_size or header_size < 8:
            raise AsarError(f"Truncated asar header: {archive}")
        (string_size,) = struct.unpack_from("<i", header_pickle, 4)
        if string_size < 0 or 8 + string_size > header_size:
            raise AsarError(f"Corrupt asar header: {archive}")
        header_string = header_pickle[8 : 8 + string_size].decode("utf-8")
        return AsarHeader(
            header_string=header_string,
            header=json.loads(header_string),
            header_size=header_size,
        )

    def _find_node(self, header: dict, filename: str, depth: int = 0) -> dict:
        if depth > 32:
            raise AsarError(f"Too many levels of links resolving {filename}")
        node = header
        for part in Path(filename).parts:
            if part in ("", "."):
                continue
            children = node.get("files")
            if children is None or part not in children:
                raise AsarError(f"{filename} not found in archive")
            node = children[part]
            if "link" in node:
                node = self._find_node(header, node["link"], depth + 1)
        return node

    def extract_file(self, archive: Pathlike, filename: str) -> bytes:
        """Return the contents of a member of the archive.

        Raises:
            AsarError: If the member is missing or is a directory
        """
        header = self.get_raw_header(archive)
        node = self._find_node(header.header, filename)
        if "files" in node:
            raise AsarError(f"{filename} is a directory in {archive}")
        if node.get("unpacked"):
            return (Path(f"{archive}.unpacked") / filename).read_bytes()
        offset = 8 + header.header_size + int(node["offset"])
        with open(archive, "rb") as f:
            f.seek(offset)
            data = f.read(node["size"])
        if len(data) != node["size"]:
            raise AsarError(f"Truncated data for {filename} in {archive}")
        return data

    def create_package(self, src: Pathlike, dest: Pathlike) -> None:
        """Pack the directory tree at src into a new archive at dest."""
        src = Path(src)
        real_src = os.path.realpath(src)
        contents: list[Path] = []
        offset = 0

        def build(directory: Path) -> dict:
            nonlocal offset
            entries: dict[str, dict] = {}
            for child in sorted(directory.iterdir()):
                if child.is_symlink():
                    target = os.path.relpath(os.path.realpath(child), real_src)
                    entries[child.name] = {"link": Path(target).as_posix()}
                elif child.is_dir():
                    entries[child.name] = {"files": build(child)}
                else:
                    size = child.stat().st_size
                    node: dict[str, object] = {
                        "size": size,
                        "offset": str(offset),
                        "integrity": file_integrity(child),
                    }
                    if child.stat().st_mode & stat.S_IXUSR:
                        node["executable"] = True
                    entries[child.name] = node
                    contents.append(child)
                    offset += size
            return entries

        header = {"files": build(src)}
        encoded = json.dumps(
            header, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        payload = struct.pack("<i", len(encoded)) + encoded
        payload += b"\0" * (_align4(len(payload)) - len(payload))
        header_pickle = struct.pack("<I", len(payload)) + payload
        size_pickle = struct.pack("<II", 4, len(header_pickle))

        self.log.debug("packing %d files into %s", len(contents), dest)
        with open(dest, "wb") as out:
            out.write(size_pickle)
            out.write(header_pickle)
            for path in contents:
                with open(path, "rb") as f:
                    shutil.copyfileobj(f, out)


def asar_header_hash(
    archive: Pathlike, archiver: AsarArchiver | None = None
) -> str:
    """SHA-256 hex digest of an archive's header string."""
    archiver = archiver or AsarArchiver()
    header = archiver.get_raw_header(archive)
    return hashlib.sha256(header.header_string.encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------------
# Bundle scanning


class AppFileType(enum.Enum):
    MACHO = "macho"
    PLAIN = "plain"
    INFO_PLIST = "info_plist"
    SNAPSHOT = "snapshot"
    APP_CODE = "app_code"


class AsarMode(enum.Enum):
    NO_ASAR = "no_asar"
    HAS_ASAR = "has_asar"


@dataclass(frozen=True)
class AppFile:
    """A regular file in an app bundle."""

    relative_path: str
    type: AppFileType


def detect_asar_mode(app_path: Pathlike) -> AsarMode:
    """Whether the app ships its code as Contents/Resources/app.asar."""
    if (Path(app_path) / RESOURCES_DIR / ASAR_NAME).exists():
        return AsarMode.HAS_ASAR
    return AsarMode.NO_ASAR


def sha256_file(path: Pathlike) -> str:
    """SHA-256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class AppTreeScanner:
    """Walks an app bundle and classifies every regular file.

    Symbolic links are skipped, never followed. Directories are visited
    once by canonical path, children in sorted order.

    Args:
        probe: File type probe (default: FileTypeProbe)
    """

    def __init__(self, probe: FileTypeProbe | None = None):
        self.probe = probe or FileTypeProbe()
        self.log = logging.getLogger(self.__class__.__name__)

    def classify(self, path: Path, relative_path: str) -> AppFileType:
        """Classify a file; the first matching rule wins."""
        parts = Path(relative_path).parts
        if ASAR_NAME in parts or ASAR_UNPACKED_NAME in parts:
            return AppFileType.APP_CODE
        if self.probe.describe(path).startswith(MACHO_PREFIX):
            return AppFileType.MACHO
        if path.name.endswith(SNAPSHOT_SUFFIX):
            return AppFileType.SNAPSHOT
        if path.name == INFO_PLIST_NAME:
            return AppFileType.INFO_PLIST
        return AppFileType.PLAIN

    def scan(self, app_path: Pathlike) -> list[AppFile]:
        """Return every regular file under app_path."""
        root = Path(os.path.realpath(app_path))
        files: list[AppFile] = []
        visited: set[str] = set()

        def traverse(path: Path) -> None:
            if path.is_symlink():
                return
            real = os.path.realpath(path)
            if real in visited:
                return
            visited.add(real)

            mode = os.lstat(real).st_mode
            if stat.S_ISREG(mode):
                relative_path = Path(real).relative_to(root).as_posix()
                files.append(
                    AppFile(relative_path, self.classify(path, relative_path))
                )
            elif stat.S_ISDIR(mode):
                for child in sorted(os.listdir(real)):
                    traverse(Path(real) / child)

        traverse(root)
        self.log.debug("scanned %d files in %s", len(files), root)
        return files


# ----------------------------------------------------------------------------
# Consistency checks


def _compared_paths(files: list[AppFile]) -> set[str]:
    return {
        f.relative_path
        for f in files
        if f.type not in (AppFileType.SNAPSHOT, AppFileType.APP_CODE)
    }


class ConsistencyValidator:
    """Checks that two scanned apps can be merged.

    Both apps must contain the same files (snapshots and app code aside)
    and every plain file must be byte-identical.

    Args:
        plain_excludes: Glob patterns of plain files whose contents are
            allowed to differ between the two apps
    """

    def __init__(self, plain_excludes: list[str] | None = None):
        self.plain_excludes = list(plain_excludes or [])
        self.log = logging.getLogger(self.__class__.__name__)

    def is_excluded(self, relative_path: str) -> bool:
        return any(
            fnmatch.fnmatch(relative_path, pattern)
            for pattern in self.plain_excludes
        )

    def check_file_sets(
        self, x64_files: list[AppFile], arm64_files: list[AppFile]
    ) -> None:
        """Raise FileSetMismatchError if the file sets differ."""
        x64_paths = _compared_paths(x64_files)
        arm64_paths = _compared_paths(arm64_files)
        unique_to_x64 = sorted(x64_paths - arm64_paths)
        unique_to_arm64 = sorted(arm64_paths - x64_paths)
        if unique_to_x64 or unique_to_arm64:
            self.log.error("unique to x64: %s", unique_to_x64)
            self.log.error("unique to arm64: %s", unique_to_arm64)
            raise FileSetMismatchError(unique_to_x64, unique_to_arm64)

    def check_plain_files(
        self,
        x64_root: Pathlike,
        x64_files: list[AppFile],
        arm64_root: Pathlike,
    ) -> None:
        """Raise ContentMismatchError on the first differing plain file."""
        for file in x64_files:
            if file.type is not AppFileType.PLAIN:
                continue
            if self.is_excluded(file.relative_path):
                self.log.debug("not comparing %s", file.relative_path)
                continue
            x64_sha = sha256_file(Path(x64_root) / file.relative_path)
            arm64_sha = sha256_file(Path(arm64_root) / file.relative_path)
            if x64_sha != arm64_sha:
                self.log.error("%s !== %s", x64_sha, arm64_sha)
                raise ContentMismatchError(
                    file.relative_path, x64_sha, arm64_sha
                )

    def validate(
        self,
        x64_root: Pathlike,
        x64_files: list[AppFile],
        arm64_root: Pathlike,
        arm64_files: list[AppFile],
    ) -> None:
        self.check_file_sets(x64_files, arm64_files)
        self.check_plain_files(x64_root, x64_files, arm64_root)


# ----------------------------------------------------------------------------
# Binary merging


class BinaryMerger:
    """Replaces every Mach-O file of the staging app with a universal one.

    Args:
        combiner: Executable combiner (default: LipoCombiner)
    """

    def __init__(self, combiner: LipoCombiner | None = None):
        self.combiner = combiner or LipoCombiner()
        self.log = logging.getLogger(self.__class__.__name__)

    def merge(
        self, tmp_app: Pathlike, x64_files: list[AppFile], arm64_app: Pathlike
    ) -> list[str]:
        """Combine each Mach-O pair in place; return the merged paths."""
        merged = []
        for file in x64_files:
            if file.type is not AppFileType.MACHO:
                continue
            target = os.path.realpath(Path(tmp_app) / file.relative_path)
            donor = os.path.realpath(Path(arm64_app) / file.relative_path)
            self.log.info("lipo %s", file.relative_path)
            self.combiner.combine(target, donor, target)
            merged.append(file.relative_path)
        return merged


# ----------------------------------------------------------------------------
# Application code repackaging


def read_package_json(
    app_path: Pathlike,
    mode: AsarMode,
    archiver: AsarArchiver | None = None,
) -> dict:
    """Read package.json from an app's code directory or archive."""
    resources = Path(app_path) / RESOURCES_DIR
    if mode is AsarMode.NO_ASAR:
        data = (resources / APP_DIR_NAME / PACKAGE_JSON).read_bytes()
    else:
        archiver = archiver or AsarArchiver()
        data = archiver.extract_file(resources / ASAR_NAME, PACKAGE_JSON)
    package = json.loads(data.decode("utf-8"))
    if not isinstance(package, dict):
        raise ValidationError(f"{PACKAGE_JSON} in {app_path} is not an object")
    return package


def relocated_path(relative_path: str, mode: AsarMode | None) -> str:
    """Where a staging file lives once the x64 app code has been moved.

    Files under Contents/Resources/app (NO_ASAR) or app.asar.unpacked
    (HAS_ASAR) end up under the x64-tagged name; everything else stays
    put. A mode of None means nothing has been moved.
    """
    if mode is None:
        return relative_path
    name = APP_DIR_NAME if mode is AsarMode.NO_ASAR else ASAR_UNPACKED_NAME
    parts = PurePosixPath(relative_path).parts
    prefix = RESOURCES_DIR.parts
    if parts[: len(prefix)] != prefix or len(parts) <= len(prefix) + 1:
        return relative_path
    if parts[len(prefix)] != name:
        return relative_path
    tagged = PurePosixPath(
        *prefix, f"{X64_TAG}.{name}", *parts[len(prefix) + 1 :]
    )
    return tagged.as_posix()


class AsarRepackager:
    """Keeps both architectures' app code and installs a launcher asar.

    The x64 code is renamed in place to x64.app(.asar), the arm64 code is
    copied in as arm64.app(.asar), and a new app.asar holding only the
    launcher and a rewritten package.json takes the original's place.

    Args:
        archiver: Asar archive codec (default: AsarArchiver)
    """

    def __init__(self, archiver: AsarArchiver | None = None):
        self.archiver = archiver or AsarArchiver()
        self.log = logging.getLogger(self.__class__.__name__)

    def relocate_app_dirs(self, tmp_app: Path, arm64_app: Path) -> None:
        resources = tmp_app / RESOURCES_DIR
        shutil.move(
            resources / APP_DIR_NAME, resources / f"{X64_TAG}.{APP_DIR_NAME}"
        )
        shutil.copytree(
            arm64_app / RESOURCES_DIR / APP_DIR_NAME,
            resources / f"{ARM64_TAG}.{APP_DIR_NAME}",
            symlinks=True,
        )

    def relocate_asars(self, tmp_app: Path, arm64_app: Path) -> None:
        resources = tmp_app / RESOURCES_DIR
        arm64_resources = arm64_app / RESOURCES_DIR

        shutil.move(
            resources / ASAR_NAME, resources / f"{X64_TAG}.{ASAR_NAME}"
        )
        x64_unpacked = resources / ASAR_UNPACKED_NAME
        if x64_unpacked.exists():
            shutil.move(
                x64_unpacked, resources / f"{X64_TAG}.{ASAR_UNPACKED_NAME}"
            )

        shutil.copy2(
            arm64_resources / ASAR_NAME, resources / f"{ARM64_TAG}.{ASAR_NAME}"
        )
        arm64_unpacked = arm64_resources / ASAR_UNPACKED_NAME
        if arm64_unpacked.exists():
            shutil.copytree(
                arm64_unpacked,
                resources / f"{ARM64_TAG}.{ASAR_UNPACKED_NAME}",
                symlinks=True,
            )

    def build_entry_asar(
        self, tmp_app: Path, x64_app: Path, mode: AsarMode, work_dir: Path
    ) -> Path:
        """Create the launcher app.asar; return its path."""
        entry_dir = work_dir / ENTRY_ASAR_DIR
        entry_dir.mkdir()
        (entry_dir / LAUNCHER_NAME).write_text(LAUNCHER_JS, encoding="utf-8")

        package = read_package_json(x64_app, mode, self.archiver)
        package["main"] = LAUNCHER_NAME
        (entry_dir / PACKAGE_JSON).write_text(
            json.dumps(package, ensure_ascii=False), encoding="utf-8"
        )

        asar_path = tmp_app / RESOURCES_DIR / ASAR_NAME
        self.archiver.create_package(entry_dir, asar_path)
        return asar_path

    def repackage(
        self,
        tmp_app: Pathlike,
        x64_app: Pathlike,
        arm64_app: Pathlike,
        mode: AsarMode,
        work_dir: Pathlike,
    ) -> Path:
        tmp_app = Path(tmp_app)
        x64_app = Path(x64_app)
        arm64_app = Path(arm64_app)
        if mode is AsarMode.NO_ASAR:
            self.log.info("relocating app directories")
            self.relocate_app_dirs(tmp_app, arm64_app)
        else:
            self.log.info("relocating app.asar archives")
            self.relocate_asars(tmp_app, arm64_app)
        return self.build_entry_asar(tmp_app, x64_app, mode, Path(work_dir))


def copy_snapshots(
    tmp_app: Pathlike,
    arm64_app: Pathlike,
    arm64_files: list[AppFile],
    mode: AsarMode | None = None,
) -> list[str]:
    """Copy every snapshot blob from the arm64 app over the staging app.

    Pass the asar mode once the app code has been relocated, so blobs
    inside it land in the x64-tagged copy.
    """
    # Always taken from the arm64 side, never compared per path.
    copied = []
    for file in arm64_files:
        if file.type is not AppFileType.SNAPSHOT:
            continue
        dest = Path(tmp_app) / relocated_path(file.relative_path, mode)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(Path(arm64_app) / file.relative_path, dest)
        copied.append(file.relative_path)
    return copied


# ----------------------------------------------------------------------------
# Info.plist merging


def read_plist(path: Pathlike) -> tuple[dict, plistlib.PlistFormat]:
    """Parse a plist file, returning its dictionary and on-disk format."""
    data = Path(path).read_bytes()
    if data.startswith(b"bplist00"):
        fmt = plistlib.FMT_BINARY
    else:
        fmt = plistlib.FMT_XML
    value = plistlib.loads(data, fmt=fmt)
    if not isinstance(value, dict):
        raise ValidationError(f"Top level of {path} is not a dictionary")
    return value, fmt


def write_plist(
    path: Pathlike, value: dict, fmt: plistlib.PlistFormat = plistlib.FMT_XML
) -> None:
    Path(path).write_bytes(plistlib.dumps(value, fmt=fmt))


def plist_values_equal(a: object, b: object) -> bool:
    """Deep equality that also requires matching types (True != 1)."""
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(
            plist_values_equal(a[key], b[key]) for key in a
        )
    if isinstance(a, list):
        return len(a) == len(b) and all(
            plist_values_equal(x, y) for x, y in zip(a, b)
        )
    return a == b


def merge_integrity(
    x64_integrity: dict | None, arm64_integrity: dict | None
) -> dict:
    """Combine the asar integrity sections of the two apps.

    Raises:
        IntegrityError: If only one app has an integrity section, or a
            section has no entry for Resources/app.asar
    """
    if x64_integrity is None and arm64_integrity is None:
        return {}
    if x64_integrity is None or arm64_integrity is None:
        raise IntegrityError(
            "Expected both Info.plist files to contain integrity sections "
            "but only one did"
        )
    merged = {}
    for tagged_path, integrity in (
        (X64_ASAR_INTEGRITY_PATH, x64_integrity),
        (ARM64_ASAR_INTEGRITY_PATH, arm64_integrity),
    ):
        if (
            not isinstance(integrity, dict)
            or ASAR_INTEGRITY_PATH not in integrity
        ):
            raise IntegrityError(
                f"Integrity section has no entry for {ASAR_INTEGRITY_PATH}"
            )
        merged[tagged_path] = integrity[ASAR_INTEGRITY_PATH]
    return merged


class PlistMerger:
    """Merges the Info.plist files of the two apps into the staging app.

    Args:
        archiver: Asar archive codec used to hash the new app.asar
    """

    def __init__(self, archiver: AsarArchiver | None = None):
        self.archiver = archiver or AsarArchiver()
        self.log = logging.getLogger(self.__class__.__name__)

    def merge_file(
        self,
        relative_path: str,
        x64_app: Path,
        arm64_app: Path,
        tmp_app: Path,
        asar_hash: str,
        mode: AsarMode | None = None,
    ) -> None:
        x64_plist, fmt = read_plist(x64_app / relative_path)
        arm64_plist, _ = read_plist(arm64_app / relative_path)

        x64_integrity = x64_plist.pop(INTEGRITY_KEY, None)
        arm64_integrity = arm64_plist.pop(INTEGRITY_KEY, None)
        if not plist_values_equal(x64_plist, arm64_plist):
            raise PlistMismatchError(relative_path)

        integrity = merge_integrity(x64_integrity, arm64_integrity)
        integrity[ASAR_INTEGRITY_PATH] = {
            "algorithm": INTEGRITY_ALGORITHM,
            "hash": asar_hash,
        }
        merged = dict(x64_plist)
        merged[INTEGRITY_KEY] = integrity
        write_plist(tmp_app / relocated_path(relative_path, mode), merged, fmt)

    def merge(
        self,
        tmp_app: Pathlike,
        x64_files: list[AppFile],
        x64_app: Pathlike,
        arm64_app: Pathlike,
        asar_path: Pathlike,
        mode: AsarMode | None = None,
    ) -> list[str]:
        """Merge every Info.plist; return the merged relative paths.

        Plists inside relocated app code are written to their x64-tagged
        location when mode is given.
        """
        asar_hash = asar_header_hash(asar_path, self.archiver)
        merged = []
        for file in x64_files:
            if file.type is not AppFileType.INFO_PLIST:
                continue
            self.log.info("merging %s", file.relative_path)
            self.merge_file(
                file.relative_path,
                Path(x64_app),
                Path(arm64_app),
                Path(tmp_app),
                asar_hash,
                mode,
            )
            merged.append(file.relative_path)
        return merged


# ----------------------------------------------------------------------------
# Universal app pipeline


class UniversalAppMerger:
    """Merges an x64 and an arm64 build of an app into a universal app.

    All work happens on a copy of the x64 app in a fresh temporary
    directory next to the output, which is removed on every exit path.
    The output path is only written by the final move, a rename within
    the same directory.

    Args:
        x64_app_path: Absolute path to the x64 app
        arm64_app_path: Absolute path to the arm64 app
        out_app_path: Absolute path for the universal app
        force: Replace out_app_path if it already exists
        plain_excludes: Glob patterns of plain files allowed to differ
        probe: File type probe (default: FileTypeProbe)
        combiner: Executable combiner (default: LipoCombiner)
        archiver: Asar archive codec (default: AsarArchiver)

    Example:
        merger = UniversalAppMerger(
            "/tmp/x64/My.app", "/tmp/arm64/My.app", "/tmp/My.app"
        )
        merger.process()
    """

    def __init__(
        self,
        x64_app_path: Pathlike,
        arm64_app_path: Pathlike,
        out_app_path: Pathlike,
        force: bool = False,
        plain_excludes: list[str] | None = None,
        probe: FileTypeProbe | None = None,
        combiner: LipoCombiner | None = None,
        archiver: AsarArchiver | None = None,
    ):
        self.x64_app_path = x64_app_path
        self.arm64_app_path = arm64_app_path
        self.out_app_path = out_app_path
        self.x64_app = Path(x64_app_path or "")
        self.arm64_app = Path(arm64_app_path or "")
        self.out_app = Path(out_app_path or "")
        self.force = force
        self.archiver = archiver or AsarArchiver()
        self.scanner = AppTreeScanner(probe)
        self.validator = ConsistencyValidator(plain_excludes)
        self.binary_merger = BinaryMerger(combiner)
        self.repackager = AsarRepackager(self.archiver)
        self.plist_merger = PlistMerger(self.archiver)
        self.log = logging.getLogger(self.__class__.__name__)

    def validate_inputs(self) -> None:
        """Check paths and clear the output location.

        Raises:
            ConfigurationError: If a path is not absolute, or the output
                exists and force is not set
        """
        for name in ("x64_app_path", "arm64_app_path", "out_app_path"):
            value = getattr(self, name)
            if not value or not os.path.isabs(value):
                raise ConfigurationError(
                    f"Expected {name} to be an absolute path but it was not"
                )

        if self.out_app.exists() or self.out_app.is_symlink():
            if not self.force:
                raise ConfigurationError(
                    f'The out path "{self.out_app}" already exists and force '
                    "is not set to true"
                )
            self.log.info("removing existing %s", self.out_app)
            if self.out_app.is_dir() and not self.out_app.is_symlink():
                shutil.rmtree(self.out_app)
            else:
                self.out_app.unlink()

    def detect_asar_mode(self) -> AsarMode:
        """Return the shared asar mode of both apps.

        Raises:
            ConfigurationError: If the apps were built with different
                asar settings
        """
        x64_mode = detect_asar_mode(self.x64_app)
        arm64_mode = detect_asar_mode(self.arm64_app)
        if x64_mode is not arm64_mode:
            raise ConfigurationError(
                "Both the x64 and arm64 versions of your application need to "
                "have been built with the same asar settings "
                "(enabled vs disabled)"
            )
        return x64_mode

    def process(self) -> Path:
        """Run the full merge.

        Returns:
            Path to the universal app
        """
        self.validate_inputs()
        asar_mode = self.detect_asar_mode()
        self.log.info("asar mode: %s", asar_mode.value)

        # Staged beside the output so the final move is a rename.
        self.out_app.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=TMP_PREFIX, dir=self.out_app.parent
        ) as tmp_dir:
            tmp_app = Path(tmp_dir) / TMP_APP_NAME
            self.log.info("copying %s to %s", self.x64_app, tmp_app)
            shutil.copytree(self.x64_app, tmp_app, symlinks=True)
            tmp_app = Path(os.path.realpath(tmp_app))

            self.log.info("scanning apps")
            x64_files = self.scanner.scan(tmp_app)
            arm64_files = self.scanner.scan(self.arm64_app)

            self.log.info("validating apps")
            self.validator.validate(
                tmp_app, x64_files, self.arm64_app, arm64_files
            )

            self.log.info("merging binaries")
            self.binary_merger.merge(tmp_app, x64_files, self.arm64_app)

            asar_path = self.repackager.repackage(
                tmp_app, self.x64_app, self.arm64_app, asar_mode, tmp_dir
            )

            copied = copy_snapshots(
                tmp_app, self.arm64_app, arm64_files, asar_mode
            )
            self.log.info("copied %d snapshot files", len(copied))

            self.plist_merger.merge(
                tmp_app,
                x64_files,
                self.x64_app,
                self.arm64_app,
                asar_path,
                asar_mode,
            )

            shutil.move(str(tmp_app), str(self.out_app))

        self.log.info("Universal app created: %s", self.out_app)
        return self.out_app


# ----------------------------------------------------------------------------
# Functional API


def make_universal_app(
    x64_app_path: Pathlike,
    arm64_app_path: Pathlike,
    out_app_path: Pathlike,
    force: bool = False,
    plain_excludes: list[str] | None = None,
    probe: FileTypeProbe | None = None,
    combiner: LipoCombiner | None = None,
    archiver: AsarArchiver | None = None,
) -> Path:
    """Merge an x64 and an arm64 app into a universal app.

    This is a convenience function that creates a UniversalAppMerger
    instance and calls process() on it.

    Returns:
        Path to the universal app

    Example:
        make_universal_app(
            "/builds/x64/My.app", "/builds/arm64/My.app", "/out/My.app"
        )
    """
    merger = UniversalAppMerger(
        x64_app_path=x64_app_path,
        arm64_app_path=arm64_app_path,
        out_app_path=out_app_path,
        force=force,
        plain_excludes=plain_excludes,
        probe=probe,
        combiner=combiner,
        archiver=archiver,
    )
    return merger.process()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
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


def _cmd_merge(args: argparse.Namespace) -> None:
    """Handle 'merge' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macuniversal")

    if sys.platform != "darwin":
        raise ConfigurationError(
            "macuniversal is only supported on darwin platforms"
        )

    config = load_config(Path(args.config) if args.config else None)
    force = args.force or get_config_bool(config, "merge", "force")
    excludes = get_config_list(config, "merge", "exclude") + (
        args.exclude or []
    )

    out_app = make_universal_app(
        x64_app_path=os.path.abspath(args.x64_app),
        arm64_app_path=os.path.abspath(args.arm64_app),
        out_app_path=os.path.abspath(args.output),
        force=force,
        plain_excludes=excludes,
    )
    log.info("Created: %s", out_app)


def _cmd_archs(args: argparse.Namespace) -> None:
    """Handle 'archs' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macuniversal")

    failed = False
    for binary in args.binaries:
        archs = binary_architectures(binary)
        if not archs:
            log.error("Not a Mach-O binary: %s", binary)
            failed = True
            continue
        print(f"{binary}: {' '.join(archs)}")
    if failed:
        sys.exit(1)


def main() -> None:
    """Command line interface for macuniversal."""
    try:
        parser = argparse.ArgumentParser(
            prog="macuniversal",
            description="Merge x64 and arm64 macOS apps into a universal app.",
            epilog=(
                "Examples:\n"
                "  macuniversal merge x64/My.app arm64/My.app -o My.app\n"
                "  macuniversal archs My.app/Contents/MacOS/My\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- merge subcommand ---
        merge_parser = subparsers.add_parser(
            "merge",
            help="merge two single-architecture apps",
            description=(
                "Merge an x64 and an arm64 build of an app into one "
                "universal app."
            ),
            epilog=(
                "Examples:\n"
                "  macuniversal merge x64/My.app arm64/My.app -o My.app\n"
                "  macuniversal merge x64/My.app arm64/My.app -o My.app -f\n"
                "  macuniversal merge x64/My.app arm64/My.app -o My.app "
                "-x 'Contents/Resources/native/*'\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        merge_parser.add_argument(
            "x64_app",
            help="path to the x64 app",
        )
        merge_parser.add_argument(
            "arm64_app",
            help="path to the arm64 app",
        )
        merge_parser.add_argument(
            "-o",
            "--output",
            required=True,
            metavar="PATH",
            help="path for the universal app",
        )
        merge_parser.add_argument(
            "-f",
            "--force",
            action="store_true",
            help="overwrite the output if it exists",
        )
        merge_parser.add_argument(
            "-x",
            "--exclude",
            action="append",
            metavar="GLOB",
            help="plain file allowed to differ between apps (repeatable)",
        )
        merge_parser.add_argument(
            "-c",
            "--config",
            metavar="FILE",
            help="path to a .macuniversal.toml config file",
        )
        _add_common_options(merge_parser)
        merge_parser.set_defaults(func=_cmd_merge)

        # --- archs subcommand ---
        archs_parser = subparsers.add_parser(
            "archs",
            help="show the architectures of Mach-O binaries",
            description="Show the architectures of Mach-O binaries.",
        )
        archs_parser.add_argument(
            "binaries",
            nargs="+",
            metavar="BINARY",
            help="Mach-O file to inspect",
        )
        _add_common_options(archs_parser)
        archs_parser.set_defaults(func=_cmd_archs)

        args = parser.parse_args()
        args.func(args)

    except UniversalError as e:
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
