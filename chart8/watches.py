"""
Parsing for the watches file that lists the chart-backed kinds this operator
manages
"""

# Standard
from dataclasses import dataclass, field
from typing import List, Optional
import datetime
import os

# Third Party
import yaml

# First Party
import alog

# Local
from . import config, constants
from .exceptions import assert_config
from .managed_object import GroupVersionKind
from .utils import parse_time_delta

log = alog.use_channel("WATCHES")


@dataclass
class WatchEntry:
    """A single chart-backed kind from the watches file"""

    gvk: GroupVersionKind
    chart: str
    watch_dependent_resources: bool = True
    reconcile_period: Optional[datetime.timedelta] = None
    override_values: dict = field(default_factory=dict)


def load_watches(path: str) -> List[WatchEntry]:
    """Load the entries of a watches file. Relative chart paths are resolved
    against the directory holding the file.

    Args:
        path:  str
            Path to the watches yaml file

    Returns:
        entries:  List[WatchEntry]
            One entry per watched kind
    """
    assert_config(os.path.isfile(path), f"Watches file {path} does not exist")
    with open(path, encoding="utf-8") as handle:
        raw_entries = yaml.safe_load(handle) or []
    assert_config(isinstance(raw_entries, list), "Watches file must hold a list")

    base_dir = os.path.dirname(os.path.abspath(path))
    entries = []
    seen = set()
    for raw_entry in raw_entries:
        entry = parse_watch_entry(raw_entry, base_dir)
        assert_config(entry.gvk not in seen, f"Duplicate watch for {entry.gvk}")
        seen.add(entry.gvk)
        log.debug("Loaded watch for %s with chart %s", entry.gvk, entry.chart)
        entries.append(entry)
    return entries


def parse_watch_entry(raw_entry: dict, base_dir: str = "") -> WatchEntry:
    """Parse one entry of the watches file, applying config defaults"""
    assert_config(isinstance(raw_entry, dict), f"Invalid watch entry: {raw_entry}")
    for key in [
        constants.WATCHES_VERSION,
        constants.WATCHES_KIND,
        constants.WATCHES_CHART,
    ]:
        assert_config(raw_entry.get(key), f"Watch entry missing {key}: {raw_entry}")

    chart = raw_entry[constants.WATCHES_CHART]
    if base_dir and not os.path.isabs(chart):
        chart = os.path.join(base_dir, chart)

    watch_dependents = raw_entry.get(constants.WATCHES_DEPENDENT_RESOURCES)
    if watch_dependents is None:
        watch_dependents = config.watch_dependent_resources

    period_str = raw_entry.get(constants.WATCHES_RECONCILE_PERIOD)
    if period_str is None:
        period_str = config.reconcile_period
    reconcile_period = None
    if period_str:
        reconcile_period = parse_time_delta(str(period_str))
        assert_config(
            reconcile_period is not None,
            f"Invalid {constants.WATCHES_RECONCILE_PERIOD}: {period_str}",
        )

    override_values = raw_entry.get(constants.WATCHES_OVERRIDE_VALUES) or {}
    assert_config(
        isinstance(override_values, dict),
        f"{constants.WATCHES_OVERRIDE_VALUES} must be a mapping",
    )

    return WatchEntry(
        gvk=GroupVersionKind(
            group=raw_entry.get(constants.WATCHES_GROUP) or "",
            version=raw_entry[constants.WATCHES_VERSION],
            kind=raw_entry[constants.WATCHES_KIND],
        ),
        chart=chart,
        watch_dependent_resources=bool(watch_dependents),
        reconcile_period=reconcile_period,
        override_values=override_values,
    )
