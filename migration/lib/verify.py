"""Post-load verification.

Checks the row count of a loaded table against what was exported and
inspects how rows are spread across nodes (DBCC PDW_SHOWSPACEUSED). A
hash column with few distinct values, or one dominant value, piles rows
onto a few nodes; that skew is reported and raised as a SkewWarning,
never as an error.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from migration.lib.errors import SkewWarning

if TYPE_CHECKING:
    from migration.lib.polybase import TargetTable
    from migration.lib.warehouse.base import WarehouseBackend

logger = logging.getLogger(__name__)

__all__ = [
    "NodeUsage",
    "VerificationReport",
    "compute_skew",
    "verify_target",
]


@dataclass
class NodeUsage:
    """One row of DBCC PDW_SHOWSPACEUSED (sizes in KB)."""

    node_id: int
    rows: int
    reserved_kb: int = 0
    data_kb: int = 0
    index_kb: int = 0
    unused_kb: int = 0
    distribution_id: Optional[int] = None

    @property
    def unit_id(self) -> int:
        return self.distribution_id if self.distribution_id is not None else self.node_id


def compute_skew(usage: List[NodeUsage], tolerance: float) -> Tuple[float, List[int]]:
    """Return the largest relative deviation from the mean and the skewed units.

    Units are distributions, or nodes for rolled-up usage. A unit is
    skewed when ``|rows - mean| / mean > tolerance``.
    """
    if not usage:
        return 0.0, []
    mean = sum(u.rows for u in usage) / len(usage)
    if mean == 0:
        return 0.0, []

    deviations = [(u.unit_id, abs(u.rows - mean) / mean) for u in usage]
    max_deviation = max(d for _, d in deviations)
    skewed = [unit for unit, d in deviations if d > tolerance]
    return max_deviation, skewed


@dataclass
class VerificationReport:
    """Row count and distribution health of a loaded table."""

    table: str
    row_count: int
    distribution: str
    skew_tolerance: float
    expected_rows: Optional[int] = None
    nodes: List[NodeUsage] = field(default_factory=list)
    max_deviation: float = 0.0
    skewed_nodes: List[int] = field(default_factory=list)
    distribution_deviation: float = 0.0

    @property
    def skewed(self) -> bool:
        return bool(self.skewed_nodes)

    @property
    def missing_rows(self) -> Optional[int]:
        """Rows exported but not loaded (rejected), when the export count is known."""
        if self.expected_rows is None:
            return None
        return self.expected_rows - self.row_count

    def by_node(self) -> Dict[int, NodeUsage]:
        """Roll distributions up to their compute node."""
        rolled: Dict[int, NodeUsage] = {}
        for usage in self.nodes:
            node = rolled.setdefault(usage.node_id, NodeUsage(node_id=usage.node_id, rows=0))
            node.rows += usage.rows
            node.reserved_kb += usage.reserved_kb
            node.data_kb += usage.data_kb
            node.index_kb += usage.index_kb
            node.unused_kb += usage.unused_kb
        return dict(sorted(rolled.items()))

    def summary(self) -> str:
        parts = [f"{self.table}: {self.row_count:,} rows"]
        if self.missing_rows:
            parts.append(f"{self.missing_rows:,} rows missing vs export")
        if self.skewed:
            parts.append(
                f"SKEWED ({len(self.skewed_nodes)} nodes beyond "
                f"{self.skew_tolerance:.0%}, max deviation {self.max_deviation:.1%})"
            )
        else:
            parts.append(f"max deviation {self.max_deviation:.1%}")
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "row_count": self.row_count,
            "expected_rows": self.expected_rows,
            "missing_rows": self.missing_rows,
            "distribution": self.distribution,
            "skew_tolerance": self.skew_tolerance,
            "max_deviation": round(self.max_deviation, 4),
            "skewed_nodes": self.skewed_nodes,
            "distribution_deviation": round(self.distribution_deviation, 4),
            "nodes": [asdict(u) for u in self.nodes],
        }


def verify_target(
    warehouse: "WarehouseBackend",
    target: "TargetTable",
    *,
    expected_rows: Optional[int] = None,
    skew_tolerance: float = 0.1,
) -> VerificationReport:
    """Count rows and check distribution skew of a loaded table.

    Skew is judged on rows per compute node. A pool reports usage per
    distribution, so rows are rolled up to their node first; the largest
    per-distribution deviation is kept as detail. Replicated tables hold a
    full copy on every node and are never reported as skewed.
    """
    name = target.qualified_name
    row_count = warehouse.row_count(name)
    usage = warehouse.space_used(name)

    report = VerificationReport(
        table=name,
        row_count=row_count,
        distribution=str(target.distribution),
        skew_tolerance=skew_tolerance,
        expected_rows=expected_rows,
        nodes=usage,
    )
    if target.distribution.kind != "REPLICATE":
        report.max_deviation, report.skewed_nodes = compute_skew(list(report.by_node().values()), skew_tolerance)
        report.distribution_deviation = compute_skew(usage, skew_tolerance)[0]

    if report.missing_rows:
        logger.warning(
            "%s has %d rows, %d fewer than exported (rejected rows)",
            name,
            row_count,
            report.missing_rows,
        )
    if report.skewed:
        message = (
            f"{name} is skewed on {target.distribution}: {len(report.skewed_nodes)} of "
            f"{len(report.by_node())} nodes deviate more than {skew_tolerance:.0%} from the mean "
            f"(max {report.max_deviation:.1%})"
        )
        logger.warning(message)
        warnings.warn(message, SkewWarning, stacklevel=2)

    logger.info("Verified %s", report.summary())
    return report
