"""Select the databases a job backs up from the server's database list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from config import FilterOptions, read_name_list

log = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset({
    "information_schema",
    "mysql",
    "performance_schema",
    "sys",
    "innodb",
})


@dataclass
class FilterRule:
    exclude_system: bool = True
    blacklist: list[str] = field(default_factory=list)
    whitelist: list[str] = field(default_factory=list)


@dataclass
class FilterStats:
    total_found: int = 0
    included: int = 0
    excluded_empty: int = 0
    excluded_by_blacklist: int = 0
    excluded_by_system: int = 0
    excluded_not_in_whitelist: int = 0

    @property
    def excluded(self) -> int:
        return (
            self.excluded_empty
            + self.excluded_by_blacklist
            + self.excluded_by_system
            + self.excluded_not_in_whitelist
        )


class NoDatabasesError(Exception):
    """Raised when filtering leaves nothing to back up."""

    def __init__(self, stats: FilterStats):
        self.stats = stats
        super().__init__(
            f"No databases left to back up after filtering "
            f"({stats.total_found} found, {stats.excluded} excluded)"
        )


def build_filter_rule(options: FilterOptions) -> FilterRule:
    """Build a FilterRule from job filter options, reading include_file if set."""
    whitelist = [n.strip() for n in options.include if n.strip()]
    if options.include_file:
        from_file = read_name_list(options.include_file)
        log.info("Loaded %d database name(s) from %s", len(from_file), options.include_file)
        whitelist.extend(from_file)
    return FilterRule(
        exclude_system=options.exclude_system,
        blacklist=[n.strip() for n in options.exclude if n.strip()],
        whitelist=whitelist,
    )


def filter_databases(names: list[str], rule: FilterRule) -> tuple[list[str], FilterStats]:
    """Apply *rule* to *names*; return the included names (in input order) and stats.

    Raises NoDatabasesError when no name survives.
    """
    whitelist = {n.lower() for n in rule.whitelist}
    blacklist = {n.lower() for n in rule.blacklist}

    stats = FilterStats(total_found=len(names))
    included: list[str] = []

    for raw in names:
        name = raw.strip()
        key = name.lower()
        if not name:
            stats.excluded_empty += 1
        elif whitelist:
            # A whitelist decides alone; blacklist and system rules are skipped.
            if key in whitelist:
                included.append(name)
            else:
                stats.excluded_not_in_whitelist += 1
        elif key in blacklist:
            stats.excluded_by_blacklist += 1
        elif rule.exclude_system and key in SYSTEM_DATABASES:
            stats.excluded_by_system += 1
        else:
            included.append(name)

    stats.included = len(included)
    log.info(
        "Database filter: %d found, %d included, %d excluded "
        "(system=%d, blacklist=%d, not_in_whitelist=%d, empty=%d)",
        stats.total_found, stats.included, stats.excluded,
        stats.excluded_by_system, stats.excluded_by_blacklist,
        stats.excluded_not_in_whitelist, stats.excluded_empty,
    )

    if not included:
        raise NoDatabasesError(stats)
    return included, stats
