"""Ranker training data: negative sampling and feature-row construction.

For every user with at least one positive:
  - positives : pairs with aggregated preference > 0, label 1
  - negatives : uniform sample of events the user never interacted with or
                clicked, size min(neg_per_pos × P, max_neg_per_user), label 0
  - features  : FeatureBuilder rows (the same builder serving uses)
  - group     : user_id, rows of one group contiguous
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
import pandas as pd

from eventrec.config import RecommenderConfig
from eventrec.data_loader import StoreSnapshot
from eventrec.feature_engineer import FeatureBuilder
from eventrec.models.catboost_ranker import RANKER_FEATURE_COLS

logger = logging.getLogger(__name__)


def positives_by_user(preferences: pd.Series) -> Dict[object, Set]:
    """``{user_id: {event_id, ...}}`` for pairs with preference > 0."""
    positive = preferences[preferences > 0]
    result: Dict[object, Set] = {}
    for user_id, event_id in positive.index:
        result.setdefault(user_id, set()).add(event_id)
    return result


def interacted_by_user(snapshot: StoreSnapshot) -> Dict[object, Set]:
    """Every (user, event) the user touched: any interaction record or click."""
    result: Dict[object, Set] = {}
    pairs = pd.concat(
        [
            snapshot.interactions[["user_id", "event_id"]],
            snapshot.clicks[["user_id", "event_id"]].dropna(subset=["user_id"]),
        ],
        ignore_index=True,
    )
    for user_id, event_id in zip(pairs["user_id"], pairs["event_id"]):
        result.setdefault(user_id, set()).add(event_id)
    return result


def sample_negatives(
    positives: Dict[object, Set],
    event_ids: Iterable,
    interacted: Optional[Dict[object, Set]] = None,
    neg_per_pos: int = 3,
    max_neg_per_user: int = 100,
    seed: int = 123,
) -> Dict[object, List]:
    """Uniformly sample negatives per user, without replacement.

    Users are visited in sorted order and the catalog is sorted, so a given
    seed always yields the same sample.

    Returns:
        ``{user_id: [event_id, ...]}`` with
        ``len == min(neg_per_pos * P, max_neg_per_user, available)``.
    """
    rng = np.random.default_rng(seed)
    catalog = sorted(set(event_ids))
    interacted = interacted or {}

    negatives: Dict[object, List] = {}
    for user_id in sorted(positives):
        pos = positives[user_id]
        if not pos:
            continue
        exclude = set(pos) | interacted.get(user_id, set())
        pool = [e for e in catalog if e not in exclude]
        n_sample = min(neg_per_pos * len(pos), max_neg_per_user, len(pool))
        if n_sample <= 0:
            negatives[user_id] = []
            continue
        picked = rng.choice(len(pool), size=n_sample, replace=False)
        negatives[user_id] = [pool[i] for i in picked]
    return negatives


def build_ranker_dataset(
    preferences: pd.Series,
    snapshot: StoreSnapshot,
    feature_builder: FeatureBuilder,
    config: Optional[RecommenderConfig] = None,
    event_ids: Optional[Sequence] = None,
) -> pd.DataFrame:
    """Build (group_id, event_id, label, *features) rows for CatBoost.

    Returns:
        DataFrame sorted by group with columns
        ``group_id, event_id, label`` + RANKER_FEATURE_COLS.
    """
    config = config or RecommenderConfig()
    positives = positives_by_user(preferences)
    catalog = event_ids if event_ids is not None else snapshot.event_ids
    negatives = sample_negatives(
        positives,
        catalog,
        interacted=interacted_by_user(snapshot),
        neg_per_pos=config.neg_per_pos_mult,
        max_neg_per_user=config.max_neg_per_user,
        seed=config.negative_sampling_seed,
    )

    frames: List[pd.DataFrame] = []
    n_pos_total = 0
    n_neg_total = 0
    for user_id in sorted(positives):
        pos_ids = sorted(positives[user_id])
        neg_ids = negatives.get(user_id, [])
        event_block = pos_ids + list(neg_ids)
        block = feature_builder.build_matrix(user_id, event_block)
        block.insert(0, "label", [1] * len(pos_ids) + [0] * len(neg_ids))
        block.insert(0, "event_id", event_block)
        block.insert(0, "group_id", user_id)
        frames.append(block)
        n_pos_total += len(pos_ids)
        n_neg_total += len(neg_ids)

    if not frames:
        raise ValueError("Ranker dataset is empty: no user has a positive preference.")

    df = pd.concat(frames, ignore_index=True)
    df["label"] = df["label"].astype(np.int8)

    pos_rate = 100.0 * n_pos_total / max(n_pos_total + n_neg_total, 1)
    logger.info(
        f"Ranker dataset: {len(df):,} rows, "
        f"{n_pos_total:,} positives ({pos_rate:.1f}%), "
        f"{n_neg_total:,} negatives "
        f"({len(frames):,} users)"
    )
    return df[["group_id", "event_id", "label"] + RANKER_FEATURE_COLS]
