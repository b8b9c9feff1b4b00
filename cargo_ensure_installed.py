#!/usr/bin/env python3
import argparse
import functools
import json
import logging
import os
import platform
import re
import subprocess
import sys
import tomllib
from dataclasses import dataclass, field
from importlib import metadata
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
    Union,
)

import requests


# --- Type Definitions for Configuration ---
class EnsureSettings(TypedDict):
    cargo_bin: str
    probe_method: str
    registry: Optional[str]
    locked: bool
    check_registry: bool
    registry_api_url: str
    registry_timeout: int


class EnsureConfig(EnsureSettings):
    cargo_home: str
    registry_token: Optional[str]
    environ: Dict[str, str]


# --- Configuration Constants ---
APP_NAME = "cargo-ensure-installed"
CARGO_SUBCOMMAND = "ensure-installed"
CONFIG_FILE_NAME = "config.json"
CRATES_TOML_NAME = ".crates.toml"
CRATES_JSON_NAME = ".crates2.json"
PROBE_METHODS = ("metadata", "list")
DEFAULT_SETTINGS = EnsureSettings(
    cargo_bin="cargo",
    probe_method="metadata",
    registry=None,
    locked=False,
    check_registry=False,
    registry_api_url="https://crates.io/api/v1",
    registry_timeout=10,
)

# --- Logger Setup ---
logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.DEBUG)


class EnsureFormatter(logging.Formatter):
    """Custom logger formatter to add color to output."""

    FORMATS = {
        logging.DEBUG: "\033[90mDEBUG> %(message)s\033[0m",
        logging.INFO: "\033[94mINFO> %(message)s\033[0m",
        logging.WARNING: "\033[93mWARN> %(message)s\033[0m",
        logging.ERROR: "\033[91mERROR> %(message)s\033[0m",
        logging.CRITICAL: "\033[91mCRIT> %(message)s\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno)
        formatter = logging.Formatter(
            log_fmt if sys.stderr.isatty() else "%(levelname)s> %(message)s"
        )
        return formatter.format(record)


# --- Errors ---
class EnsureInstalledError(Exception):
    """Base class for every error raised by the gate."""


class ParseError(EnsureInstalledError, ValueError):
    """A version requirement string could not be parsed."""

    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid version requirement '{raw}': {reason}")


class ProbeError(EnsureInstalledError):
    """The installed-package state could not be queried."""


class MalformedInstalledVersion(EnsureInstalledError, ValueError):
    """One installed entry carries a version that is not valid SemVer."""

    def __init__(self, raw: str, source: str) -> None:
        self.raw = raw
        self.source = source
        super().__init__(
            f"Installed entry '{raw}' in {source} is not a valid semantic version"
        )


class DelegatedInstallError(EnsureInstalledError):
    """`cargo install` failed; carries its exit status."""

    def __init__(self, command: Sequence[str], returncode: int) -> None:
        self.command = list(command)
        self.returncode = returncode
        super().__init__(
            f"Error running {' '.join(self.command)} (exit status {returncode})"
        )


# --- Path Utility Functions ---
def get_user_config_dir(environ: Mapping[str, str]) -> str:
    """Determines the user-specific config directory."""
    if platform.system() == "Windows":
        base = environ.get("APPDATA", os.path.expanduser("~"))
    else:
        base = environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return os.path.join(base, APP_NAME)


def get_config_file_path(environ: Mapping[str, str]) -> str:
    return os.path.join(get_user_config_dir(environ), CONFIG_FILE_NAME)


def get_cargo_home(environ: Mapping[str, str], override: Optional[str] = None) -> str:
    """Resolves the Cargo home the same way cargo does: flag, $CARGO_HOME, ~/.cargo."""
    if override:
        return override
    if environ.get("CARGO_HOME"):
        return environ["CARGO_HOME"]
    return os.path.join(os.path.expanduser("~"), ".cargo")


# --- Configuration Management ---
def load_settings(config_path: str) -> EnsureSettings:
    """Loads settings from the JSON file, falling back to defaults."""
    settings = EnsureSettings(**DEFAULT_SETTINGS)
    if not os.path.exists(config_path):
        return settings
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise TypeError("top-level value is not an object")
    except (json.JSONDecodeError, TypeError, OSError) as e:
        logger.error(
            f"Could not parse config file at {config_path} ({e}). Using defaults."
        )
        return settings
    for key, value in data.items():
        if key not in DEFAULT_SETTINGS:
            logger.warning(f"Ignoring unknown setting '{key}' in {config_path}")
        elif not is_valid_setting(key, value):
            logger.warning(
                f"Invalid value {json.dumps(value)} for '{key}' in {config_path}; "
                "using the default."
            )
        else:
            settings[key] = value  # type: ignore[literal-required]
    return settings


def is_valid_setting(key: str, value: Any) -> bool:
    """Checks a value read from the settings file against the setting's type."""
    if key in ("locked", "check_registry"):
        return isinstance(value, bool)
    if key == "registry_timeout":
        return isinstance(value, int) and not isinstance(value, bool) and value > 0
    if key == "probe_method":
        return value in PROBE_METHODS
    if key == "registry":
        return value is None or (isinstance(value, str) and bool(value))
    return isinstance(value, str) and bool(value)


def save_settings(config_path: str, settings: EnsureSettings) -> None:
    os.makedirs(os.path.dirname(config_path), exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(settings, f, indent=2)


def coerce_setting(key: str, value_str: str) -> Any:
    """Converts a `key=value` string from the command line to the setting's type."""
    if key not in DEFAULT_SETTINGS:
        raise KeyError(key)
    if key in ("locked", "check_registry"):
        lowered = value_str.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"'{key}' must be a boolean (true/false)")
    if key == "registry_timeout":
        try:
            timeout = int(value_str)
        except ValueError:
            raise ValueError(f"'{key}' must be an integer") from None
        if timeout <= 0:
            raise ValueError(f"'{key}' must be positive")
        return timeout
    if key == "probe_method":
        if value_str not in PROBE_METHODS:
            raise ValueError(f"'{key}' must be one of: {', '.join(PROBE_METHODS)}")
        return value_str
    if key == "registry":
        return value_str or None
    if not value_str:
        raise ValueError(f"'{key}' must not be empty")
    return value_str


def build_config(
    settings: EnsureSettings,
    environ: Mapping[str, str],
    cargo_home: Optional[str] = None,
    **overrides: Any,
) -> EnsureConfig:
    """Merges file settings, environment and command-line overrides."""
    merged: Dict[str, Any] = dict(settings)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    if merged["probe_method"] not in PROBE_METHODS:
        logger.warning(
            f"Unknown probe method '{merged['probe_method']}', using 'metadata'."
        )
        merged["probe_method"] = "metadata"
    merged["cargo_home"] = get_cargo_home(environ, cargo_home)
    merged["registry_token"] = environ.get("CARGO_REGISTRY_TOKEN")
    merged["environ"] = dict(environ)
    return EnsureConfig(**merged)  # type: ignore[typeddict-item]


def cargo_env(config: EnsureConfig) -> Dict[str, str]:
    """Environment for cargo child processes, built only from the config."""
    return dict(config["environ"], CARGO_HOME=config["cargo_home"])


# --- Semantic Versions ---
_NUMERIC = r"0|[1-9][0-9]*"
_PRE_IDENT = r"0|[1-9][0-9]*|[0-9]*[A-Za-z-][0-9A-Za-z-]*"
_BUILD_IDENT = r"[0-9A-Za-z-]+"
SEMVER_PATTERN = re.compile(
    rf"^(?P<major>{_NUMERIC})\.(?P<minor>{_NUMERIC})\.(?P<patch>{_NUMERIC})"
    rf"(?:-(?P<pre>(?:{_PRE_IDENT})(?:\.(?:{_PRE_IDENT}))*))?"
    rf"(?:\+(?P<build>{_BUILD_IDENT}(?:\.{_BUILD_IDENT})*))?\Z"
)
NUMERIC_PATTERN = re.compile(rf"^(?:{_NUMERIC})\Z")
PRE_PATTERN = re.compile(rf"^(?:{_PRE_IDENT})(?:\.(?:{_PRE_IDENT}))*\Z")
BUILD_PATTERN = re.compile(rf"^{_BUILD_IDENT}(?:\.{_BUILD_IDENT})*\Z")


def _prerelease_key(pre: Tuple[str, ...]) -> Tuple[Any, ...]:
    # A release sorts above any of its pre-releases.
    if not pre:
        return (1,)
    return (0, tuple((0, int(i), "") if i.isdigit() else (1, 0, i) for i in pre))


@functools.total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """A SemVer 2.0 version. Build metadata takes no part in equality or ordering."""

    major: int
    minor: int
    patch: int
    pre: Tuple[str, ...] = ()
    build: Tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def parse(cls, text: str) -> "SemanticVersion":
        match = SEMVER_PATTERN.match(text)
        if not match:
            raise ValueError(f"'{text}' is not a valid semantic version")
        pre, build = match.group("pre"), match.group("build")
        return cls(
            int(match.group("major")),
            int(match.group("minor")),
            int(match.group("patch")),
            tuple(pre.split(".")) if pre else (),
            tuple(build.split(".")) if build else (),
        )

    def _key(self) -> Tuple[Any, ...]:
        return (self.major, self.minor, self.patch, _prerelease_key(self.pre))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            text += "-" + ".".join(self.pre)
        if self.build:
            text += "+" + ".".join(self.build)
        return text


InstalledVersion = SemanticVersion


# --- Requirement Parsing ---
WILDCARDS = ("*", "x", "X")
OPERATOR_PATTERN = re.compile(r"^(?P<op>>=|<=|>|<|=|~|\^)?\s*(?P<version>.*)$", re.DOTALL)


@dataclass(frozen=True)
class Comparator:
    """One `op version` clause of a requirement; minor/patch may be left open."""

    op: str
    major: int
    minor: Optional[int] = None
    patch: Optional[int] = None
    pre: Tuple[str, ...] = ()

    def matches(self, v: SemanticVersion) -> bool:
        if self.op == "=":
            return self._matches_exact(v)
        if self.op == ">":
            return self._matches_greater(v)
        if self.op == ">=":
            return self._matches_exact(v) or self._matches_greater(v)
        if self.op == "<":
            return self._matches_less(v)
        if self.op == "<=":
            return self._matches_exact(v) or self._matches_less(v)
        if self.op == "~":
            return self._matches_tilde(v)
        return self._matches_caret(v)

    def allows_prerelease_of(self, v: SemanticVersion) -> bool:
        return (
            bool(self.pre)
            and (self.major, self.minor, self.patch) == (v.major, v.minor, v.patch)
        )

    def _matches_exact(self, v: SemanticVersion) -> bool:
        if v.major != self.major:
            return False
        if self.minor is not None and v.minor != self.minor:
            return False
        if self.patch is not None and v.patch != self.patch:
            return False
        return v.pre == self.pre

    def _matches_greater(self, v: SemanticVersion) -> bool:
        if v.major != self.major:
            return v.major > self.major
        if self.minor is None:
            return False
        if v.minor != self.minor:
            return v.minor > self.minor
        if self.patch is None:
            return False
        if v.patch != self.patch:
            return v.patch > self.patch
        return _prerelease_key(v.pre) > _prerelease_key(self.pre)

    def _matches_less(self, v: SemanticVersion) -> bool:
        if v.major != self.major:
            return v.major < self.major
        if self.minor is None:
            return False
        if v.minor != self.minor:
            return v.minor < self.minor
        if self.patch is None:
            return False
        if v.patch != self.patch:
            return v.patch < self.patch
        return _prerelease_key(v.pre) < _prerelease_key(self.pre)

    def _matches_tilde(self, v: SemanticVersion) -> bool:
        if v.major != self.major:
            return False
        if self.minor is not None and v.minor != self.minor:
            return False
        if self.patch is not None and v.patch != self.patch:
            return v.patch > self.patch
        return _prerelease_key(v.pre) >= _prerelease_key(self.pre)

    def _matches_caret(self, v: SemanticVersion) -> bool:
        if v.major != self.major:
            return False
        if self.minor is None:
            return True
        if self.patch is None:
            if self.major > 0:
                return v.minor >= self.minor
            return v.minor == self.minor
        if self.major > 0:
            if v.minor != self.minor:
                return v.minor > self.minor
            if v.patch != self.patch:
                return v.patch > self.patch
        elif self.minor > 0:
            if v.minor != self.minor:
                return False
            if v.patch != self.patch:
                return v.patch > self.patch
        elif v.minor != self.minor or v.patch != self.patch:
            return False
        return _prerelease_key(v.pre) >= _prerelease_key(self.pre)


@dataclass(frozen=True)
class VersionRequirement:
    """A parsed Cargo version requirement such as `^1.2`, `>=1.0, <2.0` or `1.*`.

    A bare `*` parses to an empty comparator tuple and matches every release.
    """

    raw: str
    comparators: Tuple[Comparator, ...]

    @classmethod
    def parse(cls, raw: str) -> "VersionRequirement":
        text = raw.strip()
        if not text:
            raise ParseError(raw, "empty requirement")
        comparators: List[Comparator] = []
        for part in text.split(","):
            comparator = _parse_comparator(raw, part.strip())
            if comparator is not None:
                comparators.append(comparator)
        return cls(raw, tuple(comparators))

    def matches(self, v: SemanticVersion) -> bool:
        if not all(c.matches(v) for c in self.comparators):
            return False
        if not v.pre:
            return True
        # Pre-releases only match a comparator that names the same x.y.z with a pre-release.
        return any(c.allows_prerelease_of(v) for c in self.comparators)

    def __str__(self) -> str:
        return self.raw


def _parse_comparator(raw: str, text: str) -> Optional[Comparator]:
    """Parses one comparator; returns None for a lone `*`."""
    if not text:
        raise ParseError(raw, "empty comparator")
    match = OPERATOR_PATTERN.match(text)
    if match is None:
        raise ParseError(raw, f"'{text}' is not a comparator")
    op, version = match.group("op"), match.group("version")
    if not version:
        raise ParseError(raw, f"operator '{op}' is missing a version")
    if re.search(r"\s", version):
        raise ParseError(raw, f"unexpected whitespace in '{version}'; separate comparators with commas")

    core, plus, build = version.partition("+")
    if plus and not BUILD_PATTERN.match(build):
        raise ParseError(raw, f"invalid build metadata '{build}'")
    core, sep, pre_text = core.partition("-")
    if sep and not PRE_PATTERN.match(pre_text):
        raise ParseError(raw, f"invalid pre-release '{pre_text}'")

    parts = core.split(".")
    if len(parts) > 3:
        raise ParseError(raw, f"too many version components in '{version}'")
    numbers: List[Optional[int]] = []
    wildcard = False
    for part in parts:
        if part in WILDCARDS:
            wildcard = True
            numbers.append(None)
        elif wildcard:
            raise ParseError(raw, f"'{part}' follows a wildcard in '{version}'")
        elif NUMERIC_PATTERN.match(part):
            numbers.append(int(part))
        else:
            raise ParseError(raw, f"'{part}' is not a version number")

    if wildcard:
        if op not in (None, "="):
            raise ParseError(raw, f"wildcard cannot be combined with '{op}'")
        op = "="
    if sep and (len(parts) < 3 or wildcard):
        raise ParseError(raw, "a pre-release requires major.minor.patch")
    if numbers[0] is None:
        return None
    numbers.extend([None] * (3 - len(numbers)))
    return Comparator(
        op or "^",
        numbers[0],
        numbers[1],
        numbers[2],
        tuple(pre_text.split(".")) if sep else (),
    )


def parse_requirement(raw: str) -> VersionRequirement:
    return VersionRequirement.parse(raw)


# --- Installed-Version Probing ---
@dataclass(frozen=True)
class ProbeResult:
    """Versions of one tool found installed, plus the entries that failed to parse."""

    tool_name: str
    versions: FrozenSet[SemanticVersion]
    malformed: Tuple[MalformedInstalledVersion, ...] = ()


def _split_install_key(key: str) -> Tuple[str, str]:
    """Splits a metadata key such as `rustfmt 0.9.0 (registry+https://...)`."""
    parts = key.split(" ")
    return parts[0], parts[1] if len(parts) > 1 else ""


def read_crates_toml(path: str) -> List[str]:
    """Returns the install keys recorded in a `.crates.toml` file."""
    try:
        with open(path, "rb") as f:
            contents = f.read().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ProbeError(f"Error reading {path}: {e}") from e
    if not contents.strip():
        return []
    try:
        value = tomllib.loads(contents)
    except tomllib.TOMLDecodeError as e:
        raise ProbeError(f"Error parsing {path}: {e}") from e
    if "v1" not in value:
        raise ProbeError(f"Invalid {CRATES_TOML_NAME} file at {path}: Missing section 'v1'.")
    if not isinstance(value["v1"], dict):
        raise ProbeError(f"Invalid {CRATES_TOML_NAME} file at {path}: v1 was not a table.")
    return list(value["v1"].keys())


def read_crates_json(path: str) -> List[str]:
    """Returns the install keys recorded in a `.crates2.json` file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            value = json.load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise ProbeError(f"Error reading {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ProbeError(f"Error parsing {path}: {e}") from e
    installs = value.get("installs") if isinstance(value, dict) else None
    if not isinstance(installs, dict):
        raise ProbeError(f"Invalid {CRATES_JSON_NAME} file at {path}: Missing object 'installs'.")
    return list(installs.keys())


def entries_from_metadata(cargo_home: str) -> Tuple[str, List[Tuple[str, str]]]:
    """Reads cargo's install tracking files; no file at all means nothing is installed."""
    toml_path = os.path.join(cargo_home, CRATES_TOML_NAME)
    json_path = os.path.join(cargo_home, CRATES_JSON_NAME)
    if os.path.exists(toml_path):
        keys, source = read_crates_toml(toml_path), toml_path
    elif os.path.exists(json_path):
        keys, source = read_crates_json(json_path), json_path
    else:
        logger.debug(f"No install metadata found under {cargo_home}")
        return cargo_home, []
    return source, [_split_install_key(k) for k in keys]


LIST_LINE_PATTERN = re.compile(r"^(?P<name>\S+) v(?P<version>\S+?)(?: \(.*\))?:$")


def parse_cargo_install_list(output: str) -> List[Tuple[str, str]]:
    """Parses `cargo install --list`; indented lines name binaries and are skipped."""
    entries = []
    for line in output.splitlines():
        if not line.strip() or line[0].isspace():
            continue
        match = LIST_LINE_PATTERN.match(line.rstrip())
        if match:
            entries.append((match.group("name"), match.group("version")))
        else:
            entries.append(_split_install_key(line.rstrip().rstrip(":")))
    return entries


def entries_from_cargo_list(config: EnsureConfig) -> Tuple[str, List[Tuple[str, str]]]:
    cmd = [config["cargo_bin"], "install", "--list"]
    source = " ".join(cmd)
    logger.debug(f"Executing: {cmd}")
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=cargo_env(config),
        )
    except OSError as e:
        raise ProbeError(f"Could not run '{source}': {e}") from e
    if completed.returncode != 0:
        raise ProbeError(
            f"'{source}' failed with exit status {completed.returncode}: "
            f"{completed.stderr.strip()}"
        )
    return source, parse_cargo_install_list(completed.stdout)


def list_installed_entries(config: EnsureConfig) -> Tuple[str, List[Tuple[str, str]]]:
    """Returns the raw `(name, version)` entries and where they were read from."""
    if config["probe_method"] == "list":
        return entries_from_cargo_list(config)
    return entries_from_metadata(config["cargo_home"])


def parse_installed_versions(
    raw_versions: Iterable[str], source: str
) -> Tuple[FrozenSet[SemanticVersion], Tuple[MalformedInstalledVersion, ...]]:
    """Parses installed version strings, setting aside the ones that are not SemVer."""
    versions = set()
    malformed: List[MalformedInstalledVersion] = []
    for raw in raw_versions:
        try:
            versions.add(_parse_installed(raw, source))
        except MalformedInstalledVersion as e:
            logger.warning(f"{e}; ignoring it.")
            malformed.append(e)
    return frozenset(versions), tuple(malformed)


def _parse_installed(raw: str, source: str) -> SemanticVersion:
    try:
        return SemanticVersion.parse(raw)
    except ValueError as e:
        raise MalformedInstalledVersion(raw, source) from e


def probe_installed_versions(tool_name: str, config: EnsureConfig) -> ProbeResult:
    if not tool_name:
        raise ProbeError("Tool name must not be empty.")
    source, entries = list_installed_entries(config)
    raw_versions = [version for name, version in entries if name == tool_name]
    versions, malformed = parse_installed_versions(raw_versions, source)
    if len(raw_versions) > 1:
        logger.info(
            f"Found {len(raw_versions)} installed entries for {tool_name}: {raw_versions}"
        )
    logger.debug(
        f"Installed versions of {tool_name} in {source}: {sorted(str(v) for v in versions)}"
    )
    return ProbeResult(tool_name, versions, malformed)


# --- Decision Engine ---
@dataclass(frozen=True)
class Skip:
    name: str
    requirement: VersionRequirement
    satisfied_by: SemanticVersion


@dataclass(frozen=True)
class Install:
    name: str
    requirement: VersionRequirement
    installed: Tuple[SemanticVersion, ...] = ()


Decision = Union[Skip, Install]


def decide(
    tool_name: str,
    requirement: VersionRequirement,
    installed: Iterable[SemanticVersion],
) -> Decision:
    """Skips when any installed version satisfies the requirement, installs otherwise."""
    candidates = tuple(sorted(set(installed)))
    satisfying = [v for v in candidates if requirement.matches(v)]
    if satisfying:
        return Skip(tool_name, requirement, satisfying[-1])
    return Install(tool_name, requirement, candidates)


# --- Registry Lookup ---
def get_registry_versions(tool_name: str, config: EnsureConfig) -> Optional[List[str]]:
    """Fetches the published, non-yanked version numbers of a crate."""
    url = f"{config['registry_api_url'].rstrip('/')}/crates/{tool_name}"
    logger.debug(f"Fetching registry info from: {url}")
    try:
        headers = {"Accept": "application/json", "User-Agent": _user_agent()}
        # The token is only sent to an explicitly chosen alternate registry.
        if config.get("registry") and config.get("registry_token"):
            headers["Authorization"] = str(config["registry_token"])
            logger.debug(f"Using CARGO_REGISTRY_TOKEN for registry '{config['registry']}'.")
        response = requests.get(url, headers=headers, timeout=config["registry_timeout"])
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as e:
        logger.warning(f"Error fetching registry info for {tool_name}: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Registry returned invalid JSON for {tool_name}: {e}")
        return None
    versions = data.get("versions") if isinstance(data, dict) else None
    if not isinstance(versions, list):
        logger.warning(f"Registry response for {tool_name} has no version list.")
        return None
    return [
        v["num"]
        for v in versions
        if isinstance(v, dict) and isinstance(v.get("num"), str) and not v.get("yanked")
    ]


def find_registry_match(
    tool_name: str, requirement: VersionRequirement, config: EnsureConfig
) -> Optional[SemanticVersion]:
    """Logs which published version the requirement resolves to. Diagnostics only."""
    published = get_registry_versions(tool_name, config)
    if published is None:
        return None
    candidates = []
    for raw in published:
        try:
            candidates.append(SemanticVersion.parse(raw))
        except ValueError:
            logger.debug(f"Skipping unparsable registry version '{raw}'")
    matching = [v for v in candidates if requirement.matches(v)]
    if not matching:
        logger.warning(
            f"No published version of {tool_name} matches '{requirement}'; cargo install will likely fail."
        )
        return None
    best = max(matching)
    logger.info(f"Registry resolves {tool_name} '{requirement}' to {best}.")
    return best


def _user_agent() -> str:
    return f"{APP_NAME}/{get_app_version()}"


# --- Installation ---
def build_install_command(
    tool_name: str, requirement: VersionRequirement, config: EnsureConfig
) -> List[str]:
    cmd = [config["cargo_bin"], "install", "--force", "--vers", requirement.raw]
    if config.get("registry"):
        cmd += ["--registry", str(config["registry"])]
    if config.get("locked"):
        cmd.append("--locked")
    cmd.append(tool_name)
    return cmd


def run_cargo_install(
    tool_name: str, requirement: VersionRequirement, config: EnsureConfig
) -> None:
    """Delegates to `cargo install`; its output goes straight to the terminal."""
    cmd = build_install_command(tool_name, requirement, config)
    logger.info(f"Installing {tool_name} '{requirement}'...")
    logger.debug(f"Executing: {cmd}")
    try:
        status = subprocess.run(cmd, env=cargo_env(config))
    except OSError as e:
        logger.debug(f"Could not start {cmd[0]}: {e}")
        raise DelegatedInstallError(cmd, 127) from e
    if status.returncode != 0:
        raise DelegatedInstallError(cmd, status.returncode)
    logger.info(f"Successfully installed {tool_name} '{requirement}'.")


# --- Gate ---
def ensure_installed(
    tool_name: str,
    raw_requirement: str,
    config: EnsureConfig,
    dry_run: bool = False,
) -> Decision:
    """Parses, probes and decides; installs only when nothing installed satisfies."""
    requirement = parse_requirement(raw_requirement)
    probe = probe_installed_versions(tool_name, config)
    decision = decide(tool_name, requirement, probe.versions)
    if isinstance(decision, Skip):
        logger.info(
            f"{tool_name} {decision.satisfied_by} satisfies '{requirement}'; nothing to do."
        )
        return decision

    if decision.installed:
        logger.info(
            f"Installed {tool_name} {[str(v) for v in decision.installed]} "
            f"does not satisfy '{requirement}'."
        )
    else:
        logger.info(f"{tool_name} is not installed.")
    if config.get("check_registry"):
        find_registry_match(tool_name, requirement, config)
    if dry_run:
        logger.info(f"Dry run: would run {build_install_command(tool_name, requirement, config)}")
        return decision
    run_cargo_install(tool_name, requirement, config)
    return decision


def list_installed_crates(config: EnsureConfig, tool_name: Optional[str] = None) -> None:
    """Lists every installed crate, or the versions of one, as the prober sees it."""
    if tool_name:
        probe = probe_installed_versions(tool_name, config)
        print(f"--- Installed versions of {tool_name} ---")
        if not probe.versions and not probe.malformed:
            return print("  Not installed.")
        for version in sorted(probe.versions):
            print(f"  - {tool_name} {version}")
        for entry in probe.malformed:
            print(f"  - {tool_name} {entry.raw} [malformed, ignored]")
        print("------------------------------")
        return None
    source, entries = list_installed_entries(config)
    print(f"--- Installed crates ({source}) ---")
    if not entries:
        return print("  No crates installed.")
    for name, version in sorted(entries):
        print(f"  - {name} {version}")
    print("------------------------------")


def get_app_version() -> str:
    try:
        return metadata.version(APP_NAME)
    except metadata.PackageNotFoundError:
        return "unknown"


# --- Main CLI ---
def _add_gate_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p", "--package", required=True, help="Name of package to install (e.g., 'rustfmt')."
    )
    parser.add_argument(
        "-r",
        "--version",
        dest="requirement",
        required=True,
        help="Version requirement to ensure is installed (accepts any valid semver, e.g., '0.9.0').",
    )


def _add_cargo_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cargo-home", help="Cargo home directory (default: $CARGO_HOME or ~/.cargo).")
    parser.add_argument("--cargo-bin", help="Cargo executable to run.")
    parser.add_argument(
        "--probe", dest="probe_method", choices=PROBE_METHODS, help="How to query installed crates."
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Install a cargo tool only when no installed version satisfies a requirement.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""Examples:
  cargo ensure-installed ensure -p rustfmt -r 0.9.0       # Install unless a ^0.9.0 rustfmt exists
  cargo ensure-installed ensure -p ripgrep -r '>=13, <15' --locked
  cargo ensure-installed check -p cargo-edit -r '~0.12'   # Report the decision only

  cargo ensure-installed list                             # List installed crates
  cargo ensure-installed config set check_registry=true
""",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-vv for debug)",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Suppress all output except errors."
    )
    subparsers = parser.add_subparsers(
        dest="command", help="Available commands", required=True
    )

    ensure_parser = subparsers.add_parser(
        "ensure", help="Install a crate unless a satisfying version is installed."
    )
    _add_gate_arguments(ensure_parser)
    _add_cargo_arguments(ensure_parser)
    ensure_parser.add_argument("--registry", help="Cargo registry to install from.")
    ensure_parser.add_argument(
        "--locked", action="store_true", default=None, help="Pass --locked to cargo install."
    )
    ensure_parser.add_argument(
        "--check-registry",
        action="store_true",
        default=None,
        help="Look up which published version will be installed.",
    )
    ensure_parser.add_argument(
        "--dry-run", action="store_true", help="Decide but do not run cargo install."
    )

    check_parser = subparsers.add_parser(
        "check", help="Print the decision without installing (exit 2 when an install is needed)."
    )
    _add_gate_arguments(check_parser)
    _add_cargo_arguments(check_parser)

    list_parser = subparsers.add_parser("list", help="List installed crates.")
    list_parser.add_argument(
        "name", nargs="?", help="Only show the installed versions of this crate."
    )
    _add_cargo_arguments(list_parser)

    config_parser = subparsers.add_parser(
        "config", help="Manage cargo-ensure-installed's configuration."
    )
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config commands", required=True
    )
    config_get_parser = config_subparsers.add_parser(
        "get", help="Get a configuration setting."
    )
    config_get_parser.add_argument(
        "key", nargs="?", help="Key to get (if omitted, shows all settings)."
    )
    config_set_parser = config_subparsers.add_parser(
        "set", help="Set a configuration setting."
    )
    config_set_parser.add_argument(
        "key_value", help="Key=Value pair (e.g., 'locked=true')."
    )
    subparsers.add_parser("version", help="Show the current version")
    return parser


def exit_status(returncode: int) -> int:
    """Maps a child's return code to our exit status; signal deaths become 128 + N."""
    if returncode < 0:
        return 128 + abs(returncode)
    return returncode or 1


def _setup_logging(args: argparse.Namespace) -> None:
    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(EnsureFormatter())
    if args.quiet:
        ch.setLevel(logging.ERROR)
    elif args.verbose == 0:
        ch.setLevel(logging.WARNING)
    elif args.verbose == 1:
        ch.setLevel(logging.INFO)
    else:
        ch.setLevel(logging.DEBUG)
    if logger.hasHandlers():
        logger.handlers.clear()
    logger.addHandler(ch)


def _run_config_command(args: argparse.Namespace, config_path: str, settings: EnsureSettings) -> int:
    if args.config_command == "get":
        if args.key:
            if args.key not in settings:
                logger.error(f"Setting '{args.key}' not found.")
                return 1
            print(json.dumps(settings[args.key]))  # type: ignore[literal-required]
        else:
            print(
                "--- Settings ---\n"
                + "\n".join(f"  {k}: {json.dumps(v)}" for k, v in settings.items())
            )
        return 0

    key, value_str = (
        args.key_value.split("=", 1) if "=" in args.key_value else (None, None)
    )
    if key is None or value_str is None:
        logger.error("Invalid format. Use 'key=value'.")
        return 1
    try:
        settings[key] = coerce_setting(key, value_str)  # type: ignore[literal-required]
    except KeyError:
        logger.error(
            f"'{key}' is not a valid configuration setting. Valid settings: {', '.join(DEFAULT_SETTINGS)}"
        )
        return 1
    except ValueError as e:
        logger.error(f"Invalid value: {e}")
        return 1
    save_settings(config_path, settings)
    logger.info(f"Setting '{key}' updated to '{value_str}'.")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entrypoint for the cargo-ensure-installed CLI."""
    argv = list(sys.argv[1:] if argv is None else argv)
    # cargo runs `cargo-ensure-installed ensure-installed ...` for `cargo ensure-installed ...`
    if argv and argv[0] == CARGO_SUBCOMMAND:
        argv = argv[1:]
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(f"{APP_NAME} v{get_app_version()}")
        return

    _setup_logging(args)
    environ = os.environ
    config_path = get_config_file_path(environ)
    settings = load_settings(config_path)

    if args.command == "config":
        sys.exit(_run_config_command(args, config_path, settings))

    config = build_config(
        settings,
        environ,
        cargo_home=args.cargo_home,
        cargo_bin=args.cargo_bin,
        probe_method=args.probe_method,
        registry=getattr(args, "registry", None),
        locked=getattr(args, "locked", None),
        check_registry=getattr(args, "check_registry", None),
    )

    try:
        if args.command == "list":
            list_installed_crates(config, args.name)
        elif args.command == "check":
            requirement = parse_requirement(args.requirement)
            probe = probe_installed_versions(args.package, config)
            decision = decide(args.package, requirement, probe.versions)
            if isinstance(decision, Skip):
                print(f"skip: {args.package} {decision.satisfied_by} satisfies '{requirement}'")
            else:
                have = ", ".join(str(v) for v in decision.installed) or "none"
                print(f"install: {args.package} '{requirement}' (installed: {have})")
                sys.exit(2)
        elif args.command == "ensure":
            ensure_installed(args.package, args.requirement, config, dry_run=args.dry_run)
    except DelegatedInstallError as e:
        logger.error(str(e))
        sys.exit(exit_status(e.returncode))
    except EnsureInstalledError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
