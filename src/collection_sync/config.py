"""
Configuration file parsing and storage construction.
"""

from configparser import ConfigParser
from configparser import Error as ConfigParserError
from pathlib import Path

from collection_sync.models import DEFAULT_STATUS_DIR
from collection_sync.models import AppConfig
from collection_sync.models import ConfigError
from collection_sync.models import PairConfig
from collection_sync.sync.conflicts import POLICIES

_PAIR_PREFIX = "pair "


def _positive_int(section, key: str, default: int) -> int:
    try:
        value = section.getint(key, fallback=default)
    except ValueError:
        raise ConfigError(f"[{section.name}] {key} must be an integer") from None
    if value < 1:
        raise ConfigError(f"[{section.name}] {key} must be at least 1")
    return value


def _parse_pair(name: str, section) -> PairConfig:
    missing = [key for key in ("a", "b") if not section.get(key)]
    if missing:
        raise ConfigError(f"Pair {name!r} is missing: {', '.join(missing)}")

    policy = section.get("conflict_policy", "defer")
    if policy not in POLICIES:
        raise ConfigError(
            f"Pair {name!r}: unknown conflict_policy {policy!r} "
            f"(expected one of: {', '.join(POLICIES)})"
        )

    read_only = section.get("read_only") or None
    if read_only not in (None, "a", "b"):
        raise ConfigError(f"Pair {name!r}: read_only must be 'a' or 'b', got {read_only!r}")

    try:
        create_missing = section.getboolean("create_missing", fallback=False)
    except ValueError:
        raise ConfigError(f"Pair {name!r}: create_missing must be a boolean") from None

    return PairConfig(
        name=name,
        path_a=Path(section["a"]).expanduser(),
        path_b=Path(section["b"]).expanduser(),
        extension=section.get("extension", "ics"),
        conflict_policy=policy,
        read_only=read_only,
        create_missing=create_missing,
    )


def load_config(config_path: Path) -> AppConfig:
    """Read the INI configuration; a missing file yields an empty configuration."""
    if not config_path.exists():
        return AppConfig()

    parser = ConfigParser(inline_comment_prefixes=(";", "#"))
    try:
        parser.read(config_path)
    except ConfigParserError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    config = AppConfig()
    if parser.has_section("general"):
        general = parser["general"]
        config.status_dir = Path(
            general.get("status_dir", str(DEFAULT_STATUS_DIR))
        ).expanduser()
        config.max_workers = _positive_int(general, "max_workers", config.max_workers)
        config.batch_size = _positive_int(general, "batch_size", config.batch_size)

    for section_name in parser.sections():
        if not section_name.startswith(_PAIR_PREFIX):
            continue
        name = section_name[len(_PAIR_PREFIX) :].strip()
        if not name:
            raise ConfigError(f"Section [{section_name}] has no pair name")
        config.pairs[name] = _parse_pair(name, parser[section_name])

    return config
