"""Matrix Factorization Recommender: Stage 1 Candidate Generator.

Learns user and event latent factors from the aggregated preference labels
by stochastic gradient descent over the *observed* (user, event, label)
triples only; unobserved pairs are absent, not zero-preference:

    minimise  Σ_(u,i)∈Ω (r_ui − p_u · q_i)²  +  λ (‖p_u‖² + ‖q_i‖²)

Keys come from :class:`IdMapper` (1-based), so row 0 of each factor matrix
is an unused sentinel and stays zero.

Usage:
    model = MatrixFactorizationRecommender(factors=32, iterations=60)
    model.fit(prefs_df)
    candidates = model.top_candidates("alice", all_event_ids, k=100)
"""
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from eventrec.exceptions import InsufficientDataError
from eventrec.models.id_mapper import UNKNOWN_KEY, IdMapper, build_mappers

logger = logging.getLogger(__name__)


class MatrixFactorizationRecommender:
    """Explicit low-rank factorization over observed preference labels.

    Args:
        factors: Number of latent factors (rank).
        iterations: Number of SGD epochs.
        regularization: L2 regularization coefficient (λ).
        learning_rate: SGD step size.
        init_scale: Std-dev of the normal factor initialisation.
        min_training_pairs: Fewer labelled pairs than this aborts training.
        random_state: Seed for initialisation and epoch shuffling.
    """

    def __init__(
        self,
        factors: int = 32,
        iterations: int = 60,
        regularization: float = 0.025,
        learning_rate: float = 0.05,
        init_scale: float = 0.1,
        min_training_pairs: int = 20,
        random_state: int = 42,
    ) -> None:
        self.factors = factors
        self.iterations = iterations
        self.regularization = regularization
        self.learning_rate = learning_rate
        self.init_scale = init_scale
        self.min_training_pairs = min_training_pairs
        self.random_state = random_state
        self.is_fitted_: bool = False

        self.user_factors_: Optional[np.ndarray] = None  # (n_users + 1, k)
        self.item_factors_: Optional[np.ndarray] = None  # (n_items + 1, k)
        self.user_mapper_: Optional[IdMapper] = None
        self.item_mapper_: Optional[IdMapper] = None
        self.train_rmse_: Optional[float] = None

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit(
        self,
        train_df: pd.DataFrame,
        user_col: str = "user_id",
        item_col: str = "event_id",
        rating_col: str = "preference",
    ) -> "MatrixFactorizationRecommender":
        """Fit the factorization on labelled (user, event) pairs.

        Args:
            train_df: One row per labelled pair.
            user_col: Column name for user IDs.
            item_col: Column name for event IDs.
            rating_col: Column with labels in [0, 1].

        Returns:
            self

        Raises:
            InsufficientDataError: fewer than ``min_training_pairs`` rows.
        """
        if len(train_df) < self.min_training_pairs:
            raise InsufficientDataError(
                f"Not enough interaction data to train: {len(train_df)} labelled pairs, "
                f"need at least {self.min_training_pairs}."
            )

        user_mapper, item_mapper = build_mappers(train_df[user_col], train_df[item_col])
        n_users, n_items = len(user_mapper), len(item_mapper)

        rows = np.fromiter((user_mapper.key_of(u) for u in train_df[user_col]), dtype=np.int64)
        cols = np.fromiter((item_mapper.key_of(i) for i in train_df[item_col]), dtype=np.int64)
        labels = train_df[rating_col].to_numpy(dtype=np.float64)

        logger.info(
            f"Label matrix: {n_users:,} users × {n_items:,} events, "
            f"density={100.0 * len(labels) / max(n_users * n_items, 1):.2f}%"
        )

        rng = np.random.default_rng(self.random_state)
        P = rng.normal(0.0, self.init_scale, size=(n_users + 1, self.factors))
        Q = rng.normal(0.0, self.init_scale, size=(n_items + 1, self.factors))
        P[UNKNOWN_KEY] = 0.0
        Q[UNKNOWN_KEY] = 0.0

        logger.info(
            f"Training MF: factors={self.factors}, iterations={self.iterations}, "
            f"lr={self.learning_rate}, reg={self.regularization}"
        )

        lr, reg = self.learning_rate, self.regularization
        for _ in range(self.iterations):
            for idx in rng.permutation(len(labels)):
                u, i = rows[idx], cols[idx]
                p_u = P[u].copy()
                err = labels[idx] - p_u @ Q[i]
                P[u] += lr * (err * Q[i] - reg * p_u)
                Q[i] += lr * (err * p_u - reg * Q[i])

        residuals = labels - np.einsum("ij,ij->i", P[rows], Q[cols])
        self.train_rmse_ = float(np.sqrt(np.mean(residuals ** 2)))

        self.user_factors_ = P
        self.item_factors_ = Q
        self.user_mapper_ = user_mapper
        self.item_mapper_ = item_mapper
        self.is_fitted_ = True

        logger.info(f"MF complete: train RMSE={self.train_rmse_:.4f}")
        return self

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def score(self, user_id, event_id) -> float:
        """Predicted preference for one pair.

        Raises:
            UnknownIdentifierError: user or event not seen in training.
        """
        self._check_fitted()
        u = self.user_mapper_.key_of(user_id)
        i = self.item_mapper_.key_of(event_id)
        return float(self.user_factors_[u] @ self.item_factors_[i])

    def knows_user(self, user_id) -> bool:
        self._check_fitted()
        return user_id in self.user_mapper_

    def score_many(self, user_id, event_ids: Sequence) -> np.ndarray:
        """Scores for many events; cold users and unseen events score 0."""
        self._check_fitted()
        u = self.user_mapper_.lookup(user_id)
        keys = np.array([self.item_mapper_.lookup(e) for e in event_ids], dtype=np.int64)
        if u == UNKNOWN_KEY or len(keys) == 0:
            return np.zeros(len(keys), dtype=np.float64)
        # sentinel rows are zero, so unknown events get 0.0
        return self.item_factors_[keys] @ self.user_factors_[u]

    def top_candidates(self, user_id, event_ids: Sequence, k: int) -> List:
        """Top-``k`` candidate pool for ``user_id``.

        Known events are ordered by score descending (ties → ascending id),
        followed by events the factorization never saw. A cold user, or a
        user whose scores are all non-finite, gets the full pool unordered.
        """
        self._check_fitted()
        event_ids = list(event_ids)
        if not self.knows_user(user_id):
            logger.debug(f"Cold-start user {user_id!r}: forwarding full pool of {len(event_ids)}")
            return event_ids

        scores = self.score_many(user_id, event_ids)
        known = [
            (eid, s) for eid, s in zip(event_ids, scores)
            if eid in self.item_mapper_ and np.isfinite(s)
        ]
        if not known:
            return event_ids

        known.sort(key=lambda pair: (-pair[1], pair[0]))
        unseen = sorted(e for e in event_ids if e not in self.item_mapper_)
        return ([eid for eid, _ in known] + unseen)[:k]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Path) -> None:
        """Save model to directory.

        Artifacts:
        - ``mf_factors.npz``: user / event factor matrices
        - ``id_maps.json``: the training-time raw id → key mappings
        - ``mf_config.json``: hyper-parameters and sizes
        """
        self._check_fitted()
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        np.savez(path / "mf_factors.npz", user_factors=self.user_factors_, item_factors=self.item_factors_)

        id_maps = {
            "users": self.user_mapper_.to_records(),
            "events": self.item_mapper_.to_records(),
        }
        with open(path / "id_maps.json", "w") as f:
            json.dump(id_maps, f)

        config = {
            "model_type": "MatrixFactorizationRecommender",
            "factors": self.factors,
            "iterations": self.iterations,
            "regularization": self.regularization,
            "learning_rate": self.learning_rate,
            "init_scale": self.init_scale,
            "min_training_pairs": self.min_training_pairs,
            "random_state": self.random_state,
            "n_users": len(self.user_mapper_),
            "n_items": len(self.item_mapper_),
            "train_rmse": self.train_rmse_,
        }
        with open(path / "mf_config.json", "w") as f:
            json.dump(config, f, indent=2)

        logger.info(f"MatrixFactorizationRecommender saved to {path}")

    @classmethod
    def load(cls, path: Path) -> "MatrixFactorizationRecommender":
        """Load a model from a directory written by :meth:`save`."""
        path = Path(path)
        with open(path / "mf_config.json") as f:
            config = json.load(f)

        model = cls(
            factors=config["factors"],
            iterations=config["iterations"],
            regularization=config["regularization"],
            learning_rate=config["learning_rate"],
            init_scale=config["init_scale"],
            min_training_pairs=config["min_training_pairs"],
            random_state=config["random_state"],
        )

        with np.load(path / "mf_factors.npz") as arrays:
            model.user_factors_ = arrays["user_factors"]
            model.item_factors_ = arrays["item_factors"]

        with open(path / "id_maps.json") as f:
            id_maps = json.load(f)
        model.user_mapper_ = IdMapper.from_records(id_maps["users"], kind="user")
        model.item_mapper_ = IdMapper.from_records(id_maps["events"], kind="event")
        model.train_rmse_ = config.get("train_rmse")
        model.is_fitted_ = True

        if model.user_factors_.shape[0] != len(model.user_mapper_) + 1:
            raise ValueError(f"User factors do not match id mapping in {path}")
        if model.item_factors_.shape[0] != len(model.item_mapper_) + 1:
            raise ValueError(f"Event factors do not match id mapping in {path}")

        logger.info(
            f"MatrixFactorizationRecommender loaded from {path} "
            f"({len(model.user_mapper_):,} users, {len(model.item_mapper_):,} events, "
            f"factors={model.factors})"
        )
        return model

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_fitted(self) -> None:
        if not self.is_fitted_:
            raise ValueError("Model not fitted. Call fit() first.")

    def __repr__(self) -> str:
        status = "fitted" if self.is_fitted_ else "not fitted"
        details = ""
        if self.is_fitted_:
            details = (
                f", {len(self.user_mapper_):,} users, {len(self.item_mapper_):,} events, "
                f"factors={self.factors}"
            )
        return f"MatrixFactorizationRecommender({status}{details})"
