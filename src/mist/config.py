"""
Profile configuration -- where mist finds out what to sync.

The configuration is a YAML mapping of profile name to profile record:

    docs:
      local_path: ~/docs
      remote_host: user@host
      remote_path: /srv/mist/docs
      recipient: 0xDEADBEEF
      staging_path: /tmp/mist        # optional
      gpg_program: gpg2              # optional

The first existing file among the candidate locations wins. Any broken
section fails the whole load; a half-usable configuration is never
returned.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import yaml
from pydantic import ValidationError

from .errors import (
    DuplicateProfileError,
    InvalidFieldError,
    MissingFieldError,
    NoFileFoundError,
    ParseError,
)
from .models import REQUIRED_FIELDS, Configuration, Profile

logger = logging.getLogger("mist.config")

CONFIG_NAME = "mist.yaml"

# every profile field is text; key ids like 0xDEADBEEF or 12345678 stay verbatim
_TEXT_ONLY_TAGS = frozenset({
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:timestamp",
})


class _DuplicateKey(Exception):
    def __init__(self, key: Any, top_level: bool, line: int) -> None:
        self.key = key
        self.top_level = top_level
        self.line = line
        super().__init__(key)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses mappings with repeated keys.

    Plain ``yaml.safe_load`` keeps the last duplicate silently, which
    would let a second ``[docs]`` section shadow the first.
    Plain scalars are never resolved to numbers, booleans or dates.
    """

    _root: Optional[yaml.Node] = None

    yaml_implicit_resolvers = {
        first: [(tag, regexp) for tag, regexp in resolvers if tag not in _TEXT_ONLY_TAGS]
        for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
    }

    def construct_document(self, node):
        self._root = node
        return super().construct_document(node)

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=True)
                try:
                    duplicate = key in seen
                except TypeError:
                    # unhashable keys are reported by the base constructor
                    continue
                if duplicate:
                    raise _DuplicateKey(
                        key, node is self._root, key_node.start_mark.line + 1
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def home_from_env() -> Path:
    """Return the directory named by ``$HOME``.

    Raises:
        NoFileFoundError: If ``$HOME`` is unset, since no candidate
            configuration path can be built without it.
    """
    home = os.environ.get("HOME")
    if not home:
        raise NoFileFoundError(["$HOME is not set"])
    return Path(home)


def default_search_paths(home: Path) -> list[Path]:
    """Candidate configuration files, highest priority first.

    Args:
        home: The user's home directory.

    Returns:
        list[Path]: Ordered candidate paths.
    """
    return [
        home / ".config" / "mist" / CONFIG_NAME,
        home / ".config" / CONFIG_NAME,
        home / ".mist.yaml",
    ]


def load(search_paths: Iterable[Path]) -> Configuration:
    """Load the first existing configuration file.

    Args:
        search_paths: Candidate files in priority order.

    Returns:
        Configuration: All profiles from the chosen file.

    Raises:
        NoFileFoundError: If none of the candidates exist.
        ParseError: On malformed YAML or a malformed section.
        DuplicateProfileError: If a profile name appears twice.
        MissingFieldError: If a profile lacks a required field.
        InvalidFieldError: If a profile field has an unusable value.
    """
    candidates = [Path(p).expanduser() for p in search_paths]
    for candidate in candidates:
        if candidate.is_file():
            logger.info("Using configuration %s", candidate)
            return load_configuration(candidate)
        logger.debug("No configuration at %s", candidate)
    raise NoFileFoundError(candidates)


def load_configuration(path: Path) -> Configuration:
    """Load one specific configuration file.

    Args:
        path: The YAML file to read.

    Returns:
        Configuration: All profiles from the file.
    """
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NoFileFoundError([path]) from None
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(str(path), str(exc)) from exc

    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except _DuplicateKey as dup:
        if dup.top_level:
            raise DuplicateProfileError(str(dup.key), str(path)) from None
        raise ParseError(
            str(path), f"duplicate key '{dup.key}' on line {dup.line}"
        ) from None
    except yaml.YAMLError as exc:
        raise ParseError(str(path), str(exc)) from exc

    return from_mapping(data, source=path)


def from_mapping(data: Any, source: Optional[Path] = None) -> Configuration:
    """Validate a parsed mapping and build a Configuration.

    Args:
        data: Mapping of profile name to profile record.
        source: File the data came from, if any.

    Returns:
        Configuration: The validated configuration.
    """
    where = str(source) if source else "<memory>"
    if data is None:
        raise ParseError(where, "no profiles defined")
    if not isinstance(data, Mapping):
        raise ParseError(where, "top level must be a mapping of profile names")

    profiles: dict[str, Profile] = {}
    for raw_name, section in data.items():
        name = str(raw_name)
        if name in profiles:
            raise DuplicateProfileError(name, where)
        profiles[name] = _build_profile(name, section, where)

    logger.debug("Loaded %d profile(s) from %s", len(profiles), where)
    return Configuration(source=source, profiles=profiles)


def _build_profile(name: str, section: Any, where: str) -> Profile:
    if not isinstance(section, Mapping):
        raise ParseError(where, f"profile [{name}] must be a mapping")

    for field in REQUIRED_FIELDS:
        value = section.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingFieldError(name, field)

    unknown = set(section) - set(Profile.model_fields)
    if unknown:
        logger.warning(
            "Profile [%s] has unknown keys: %s", name, ", ".join(sorted(map(str, unknown)))
        )

    fields = {k: v for k, v in section.items() if k in Profile.model_fields}
    fields["name"] = name
    try:
        return Profile(**fields)
    except ValidationError as exc:
        error = exc.errors()[0]
        loc = error.get("loc") or ("staging_path",)
        raise InvalidFieldError(name, str(loc[0]), error.get("msg", str(exc))) from exc
