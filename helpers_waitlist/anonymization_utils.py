"""
Seeded pseudonymization of identifier columns for exported records.
"""

import os
import sys
import logging
from typing import Any, Dict, Iterable, Optional

import numpy as np
import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import IDENTIFIER_COLUMNS, REGISTRATION_ID, CONTRIBUTING_IDS


def build_pseudonym_map(values: Iterable[Any], rng: np.random.Generator) -> Dict[Any, int]:
    """Distinct non-null values (in order of appearance) -> random permutation of 1..n."""
    distinct = [v for v in pd.unique(pd.Series(list(values), dtype="object")) if not pd.isna(v)]
    codes = rng.permutation(len(distinct)) + 1
    return {value: int(code) for value, code in zip(distinct, codes)}


def pseudonymize_identifiers(df: pd.DataFrame, columns: Optional[Iterable[str]] = None, seed: int = 0,
                             logger: Optional[logging.Logger] = None) -> pd.DataFrame:
    """Replace identifier columns with seeded random integer codes.

    Each column gets its own permutation of 1..n over its distinct values; the
    same seed and input always produce the same codes. Registration ids inside
    contributing_registration_ids are recoded with the registration_id map.
    """
    columns = IDENTIFIER_COLUMNS if columns is None else list(columns)
    rng = np.random.default_rng(seed)
    out = df.copy()

    for col in columns:
        if col not in out.columns:
            continue
        values = list(out[col])
        if col == REGISTRATION_ID and CONTRIBUTING_IDS in out.columns:
            # merged-away registrations only appear in the contributing lists
            values += [i for ids in out[CONTRIBUTING_IDS] if ids is not None for i in ids]
        mapping = build_pseudonym_map(values, rng)
        out[col] = out[col].map(mapping).astype("Int64")
        if col == REGISTRATION_ID and CONTRIBUTING_IDS in out.columns:
            out[CONTRIBUTING_IDS] = [
                [mapping.get(i) for i in ids] if ids is not None else None
                for ids in out[CONTRIBUTING_IDS]
            ]
        if logger:
            logger.info(f"→ [PSEUDONYMIZE] {col}: {len(mapping):,} distinct identifiers recoded")
    return out
