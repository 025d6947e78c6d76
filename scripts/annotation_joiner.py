import logging
import math
import numbers
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Set

import pandas as pd

KEY_COLUMN = "file_name"
GENE_COLUMN = "gene_name"
VALUE_COLUMN = "percent_identical"


class AnnotationJoinError(ValueError):
    """Raised when annotation tables cannot be joined or reshaped."""


class InvalidThresholdError(AnnotationJoinError):
    pass


class EmptyInputError(AnnotationJoinError):
    pass


class DuplicateKeyError(AnnotationJoinError):
    pass


class CoverageMismatchError(AnnotationJoinError):
    """Raised only under CoveragePolicy.ABORT; coverage gaps are otherwise informational."""

    def __init__(self, missing: Set[str]):
        self.missing = set(missing)
        super().__init__(f"{len(self.missing)} tree tip(s) have no metadata: {', '.join(sorted(self.missing))}")


class CoveragePolicy(str, Enum):
    """What to do with tree tips that have no metadata row."""
    WARN = "warn"
    ABORT = "abort"
    DROP = "drop"


def _require_columns(df: pd.DataFrame, columns: Sequence[str], table: str) -> None:
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise AnnotationJoinError(f"Missing required columns in the {table} table: {missing}")


def validate_tip_coverage(tips: Iterable[str], metadata_keys: Iterable[str]) -> Set[str]:
    """Return the tips with no exactly matching metadata key."""
    return set(tips) - set(metadata_keys)


def enforce_coverage(tips: Sequence[str], metadata_keys: Iterable[str],
                     policy: CoveragePolicy = CoveragePolicy.WARN) -> List[str]:
    """Apply a coverage policy and return the tips the workflow should keep (in tip order)."""
    policy = CoveragePolicy(policy)
    missing = validate_tip_coverage(tips, metadata_keys)

    if not missing:
        logging.info(f"✅ All {len(tips)} tree tips have metadata.")
        return list(tips)

    for tip in sorted(missing):
        logging.warning(f"⚠️ Tip {tip} has no metadata in the table!")

    if policy is CoveragePolicy.ABORT:
        raise CoverageMismatchError(missing)

    if policy is CoveragePolicy.DROP:
        kept = [tip for tip in tips if tip not in missing]
        logging.info(f"✂️ Dropping {len(missing)} unannotated tips, {len(kept)} remain.")
        return kept

    return list(tips)


def join_tip_annotations(tips: Sequence[str], metadata: pd.DataFrame, key: str = KEY_COLUMN) -> pd.DataFrame:
    """Left-join metadata onto the tree tips.

    The result has one row per tip, in tip order, indexed by the tip name
    (index name ``label``). Tips without metadata keep NaN in every
    descriptive column. The metadata table itself is not modified.
    """
    _require_columns(metadata, [key], "metadata")

    duplicated = metadata[key][metadata[key].duplicated()]
    if not duplicated.empty:
        raise DuplicateKeyError(f"Duplicate {key} values in metadata: {sorted(set(duplicated.astype(str)))}")

    indexed = metadata.set_index(key)
    annotations = indexed.reindex(pd.Index(list(tips), name="label"))

    logging.info(f"🔗 Joined metadata onto {len(annotations)} tips "
                 f"({int(annotations.notna().any(axis=1).sum())} annotated).")
    return annotations


def filter_and_pivot(observations: pd.DataFrame, threshold: float,
                     column_order: Optional[Sequence[str]] = None,
                     on_duplicate: str = "max") -> pd.DataFrame:
    """Filter long-format BLAST hits by percent identity and pivot them wide.

    Rows below ``threshold`` are dropped before pivoting (the boundary is
    inclusive). Duplicate (file_name, gene_name) pairs surviving the filter
    keep their highest percent identity, or raise DuplicateKeyError when
    ``on_duplicate="raise"``.

    Columns are discovered after filtering, so a gene with no surviving hit
    does not appear at all. ``column_order`` entries come first (names that
    did not survive are skipped), then the rest in first-seen order. Cells
    without a hit are NaN, never 0.

    Returns:
        DataFrame indexed by file_name with one float column per gene.
    """
    if on_duplicate not in ("max", "raise"):
        raise ValueError(f"on_duplicate must be 'max' or 'raise', got {on_duplicate!r}")

    if observations.empty:
        raise EmptyInputError("No BLAST observations to pivot.")

    if isinstance(threshold, bool) or not isinstance(threshold, numbers.Real) \
            or not math.isfinite(threshold) or not 0 <= threshold <= 100:
        raise InvalidThresholdError(f"Threshold must be a number in [0, 100], got {threshold!r}")

    _require_columns(observations, [KEY_COLUMN, GENE_COLUMN, VALUE_COLUMN], "BLAST")

    hits = observations[[KEY_COLUMN, GENE_COLUMN, VALUE_COLUMN]].reset_index(drop=True)
    try:
        hits[VALUE_COLUMN] = pd.to_numeric(hits[VALUE_COLUMN], errors="raise").astype(float)
    except (TypeError, ValueError) as e:
        raise AnnotationJoinError(f"Non-numeric {VALUE_COLUMN} value: {e}") from e

    for column in (KEY_COLUMN, GENE_COLUMN, VALUE_COLUMN):
        blank = hits[column].isna()
        if column != VALUE_COLUMN:
            blank |= hits[column].astype(str).str.strip() == ""
        if blank.any():
            rows = list(hits.index[blank])
            raise AnnotationJoinError(f"Blank {column} in BLAST rows {rows}")

    out_of_range = ~hits[VALUE_COLUMN].between(0, 100)
    if out_of_range.any():
        values = hits.loc[out_of_range, VALUE_COLUMN].tolist()
        raise AnnotationJoinError(f"{VALUE_COLUMN} outside [0, 100]: {values}")

    hits = hits[hits[VALUE_COLUMN] >= threshold]
    logging.info(f"🧬 {len(hits)} of {len(observations)} BLAST hits pass {VALUE_COLUMN} >= {threshold}.")

    if hits.empty:
        raise EmptyInputError(f"No BLAST hits pass {VALUE_COLUMN} >= {threshold}.")

    pair = [KEY_COLUMN, GENE_COLUMN]
    duplicated = hits.duplicated(subset=pair, keep=False)
    if duplicated.any():
        pairs = sorted({(str(f), str(g)) for f, g in hits.loc[duplicated, pair].itertuples(index=False)})
        if on_duplicate == "raise":
            raise DuplicateKeyError(f"Duplicate ({KEY_COLUMN}, {GENE_COLUMN}) pairs: {pairs}")
        logging.warning(f"⚠️ Keeping the highest {VALUE_COLUMN} for duplicate pairs: {pairs}")
        # Stable sort keeps the first-seen row among equal values
        best = hits.sort_values(VALUE_COLUMN, ascending=False, kind="mergesort").drop_duplicates(subset=pair)
        hits = hits.loc[hits.index.isin(best.index)]

    row_order = list(pd.unique(hits[KEY_COLUMN]))
    seen_columns = list(pd.unique(hits[GENE_COLUMN]))

    columns = [col for col in (column_order or []) if col in seen_columns]
    columns = list(dict.fromkeys(columns))
    columns += [col for col in seen_columns if col not in columns]

    matrix = hits.pivot(index=KEY_COLUMN, columns=GENE_COLUMN, values=VALUE_COLUMN)
    matrix = matrix.reindex(index=row_order, columns=columns)
    matrix.index.name = KEY_COLUMN
    matrix.columns.name = None

    logging.info(f"📊 Feature matrix: {matrix.shape[0]} samples x {matrix.shape[1]} genes {columns}.")
    return matrix
