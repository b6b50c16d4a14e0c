"""CatBoost Ranker: Stage 2 Re-ranker.

Learns to re-rank the Stage-A candidate pool into the final top-N event list.

Input to fit():
    X        : feature matrix  (n_rows, n_features), columns RANKER_FEATURE_COLS
    y        : relevance labels (1 = positive, 0 = sampled negative)
    group_ids: user IDs, used by CatBoost to form ranking groups

Loss:
    YetiRank : CatBoost's pairwise ranking objective, strong on NDCG
    Alternative: 'PairLogit' for smoother gradients

Usage:
    ranker = CatBoostRanker(iterations=200, learning_rate=0.1)
    ranker.fit(X_train, y_train, group_ids_train)
    ranked = ranker.rank(event_ids, X_candidates, n=6)
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from catboost import CatBoost, Pool

logger = logging.getLogger(__name__)

# Feature column definitions, shared by training rows and serving rows
EVENT_FEATURE_COLS: List[str] = [
    "event_recency",
    "organizer_score",
    "venue_capacity",
    "category_id",
    "hour_of_day",
    "day_of_week",
    "event_clicks_30d",
    "event_dwell_30d",
    "is_upcoming",
    "days_to_event",
]

SOCIAL_FEATURE_COLS: List[str] = [
    "friends_going_rate",
    "friends_interested_rate",
]

USER_FEATURE_COLS: List[str] = [
    "user_cat_affinity",
    "user_hour_affinity",
    "user_dow_affinity",
    "organizer_user_prior",
]

# All features fed into the ranker (order matters)
RANKER_FEATURE_COLS: List[str] = (
    EVENT_FEATURE_COLS + SOCIAL_FEATURE_COLS + USER_FEATURE_COLS + ["mf_score"]
)


class CatBoostRanker:
    """CatBoost-based learning-to-rank model for candidate re-ranking.

    Args:
        iterations: Number of boosting iterations.
        learning_rate: Gradient boosting learning rate.
        depth: Tree depth.
        loss_function: CatBoost ranking loss ('YetiRank' or 'PairLogit').
        random_seed: Reproducibility seed.
        verbose: Logging interval (0 = silent).
    """

    def __init__(
        self,
        iterations: int = 200,
        learning_rate: float = 0.1,
        depth: int = 6,
        loss_function: str = "YetiRank",
        random_seed: int = 42,
        verbose: int = 0,
    ) -> None:
        self.iterations = iterations
        self.learning_rate = learning_rate
        self.depth = depth
        self.loss_function = loss_function
        self.random_seed = random_seed
        self.verbose = verbose
        self.is_fitted_: bool = False
        self._model: Optional[CatBoost] = None
        self.feature_names_: List[str] = RANKER_FEATURE_COLS.copy()
        self.tree_count_: Optional[int] = None

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit(
        self,
        X_train: pd.DataFrame,
        y_train: pd.Series,
        group_ids_train: pd.Series,
    ) -> "CatBoostRanker":
        """Train the ranker on every labelled row.

        Rows of one group must be contiguous; callers sort by group first.

        Args:
            X_train: Feature matrix, columns must include RANKER_FEATURE_COLS.
            y_train: Binary relevance labels (same index as X_train).
            group_ids_train: User IDs defining ranking groups.

        Returns:
            self
        """
        missing = [c for c in RANKER_FEATURE_COLS if c not in X_train.columns]
        if missing:
            raise ValueError(f"Ranker training frame is missing features: {missing}")
        feature_cols = list(RANKER_FEATURE_COLS)
        self.feature_names_ = feature_cols

        logger.info(
            f"Building ranker training pool: {len(X_train):,} rows, "
            f"{len(feature_cols)} features, "
            f"{group_ids_train.nunique():,} users"
        )

        train_pool = Pool(
            data=X_train[feature_cols].to_numpy(dtype=np.float64),
            label=y_train.to_numpy(dtype=np.float64),
            group_id=[str(g) for g in group_ids_train],
            feature_names=feature_cols,
        )

        params = {
            "iterations": self.iterations,
            "learning_rate": self.learning_rate,
            "depth": self.depth,
            "loss_function": self.loss_function,
            "random_seed": self.random_seed,
            "verbose": self.verbose,
            "allow_writing_files": False,
            "thread_count": 1,
        }

        logger.info(
            f"Training CatBoost Ranker: loss={self.loss_function}, "
            f"iterations={self.iterations}, depth={self.depth}, "
            f"lr={self.learning_rate}"
        )

        self._model = CatBoost(params)
        self._model.fit(train_pool)

        self.tree_count_ = int(self._model.tree_count_)
        self.is_fitted_ = True

        logger.info(f"CatBoost Ranker trained: {self.tree_count_} trees")
        return self

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """Predict ranking scores for candidates.

        Args:
            X: Feature matrix (same columns as training).

        Returns:
            1-D array of scores (higher = more relevant).
        """
        self._check_fitted()
        if len(X) == 0:
            return np.zeros(0, dtype=np.float64)
        return np.asarray(
            self._model.predict(X[self.feature_names_].to_numpy(dtype=np.float64)),
            dtype=np.float64,
        )

    def rank(
        self, event_ids: Sequence, X: pd.DataFrame, n: int
    ) -> List[Tuple[object, float]]:
        """Score candidates and return the top-``n`` ``(event_id, score)`` pairs.

        Sorted by score descending; ties broken by ascending event id.
        """
        if len(event_ids) == 0 or n <= 0:
            return []
        scores = self.predict(X)
        ranked = sorted(zip(event_ids, scores.tolist()), key=lambda pair: (-pair[1], pair[0]))
        return ranked[:n]

    def explain(
        self, X: pd.DataFrame, top_n: int = 3
    ) -> List[Dict[str, float]]:
        """SHAP-based explanation for each row.

        Args:
            X: Feature matrix (n rows to explain).
            top_n: Number of top features to return per row.

        Returns:
            List of dicts  {feature_name: shap_value}  one per row.
        """
        self._check_fitted()
        feature_cols = self.feature_names_
        pool = Pool(data=X[feature_cols].to_numpy(dtype=np.float64), feature_names=feature_cols)
        shap_values = self._model.get_feature_importance(data=pool, type="ShapValues")
        # shap_values shape: (n_rows, n_features + 1); last col is bias
        shap_values = shap_values[:, :-1]

        explanations = []
        for row_shap in shap_values:
            top_indices = np.argsort(np.abs(row_shap))[::-1][:top_n]
            explanations.append(
                {feature_cols[i]: round(float(row_shap[i]), 4) for i in top_indices}
            )
        return explanations

    def feature_importance(self) -> pd.DataFrame:
        """Return feature importances sorted descending."""
        self._check_fitted()
        importances = self._model.get_feature_importance(type="PredictionValuesChange")
        return (
            pd.DataFrame(
                {"feature": self.feature_names_, "importance": importances}
            )
            .sort_values("importance", ascending=False)
            .reset_index(drop=True)
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Path) -> None:
        """Save model to directory.

        Artifacts:
        - ``catboost_model.cbm``: native CatBoost format
        - ``ranker_config.json``: hyper-parameters + feature names
        """
        self._check_fitted()
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        self._model.save_model(str(path / "catboost_model.cbm"))

        config = {
            "model_type": "CatBoostRanker",
            "iterations": self.iterations,
            "learning_rate": self.learning_rate,
            "depth": self.depth,
            "loss_function": self.loss_function,
            "random_seed": self.random_seed,
            "tree_count": self.tree_count_,
            "feature_names": self.feature_names_,
        }
        with open(path / "ranker_config.json", "w") as f:
            json.dump(config, f, indent=2)

        logger.info(f"CatBoostRanker saved to {path}")

    @classmethod
    def load(cls, path: Path) -> "CatBoostRanker":
        """Load CatBoostRanker from directory written by :meth:`save`."""
        path = Path(path)
        with open(path / "ranker_config.json") as f:
            config = json.load(f)

        ranker = cls(
            iterations=config["iterations"],
            learning_rate=config["learning_rate"],
            depth=config["depth"],
            loss_function=config["loss_function"],
            random_seed=config["random_seed"],
        )
        ranker._model = CatBoost()
        ranker._model.load_model(str(path / "catboost_model.cbm"))
        ranker.feature_names_ = config["feature_names"]
        ranker.tree_count_ = config.get("tree_count")
        ranker.is_fitted_ = True

        if ranker.feature_names_ != RANKER_FEATURE_COLS:
            raise ValueError(
                f"Ranker at {path} was trained on a different feature set: {ranker.feature_names_}"
            )

        logger.info(f"CatBoostRanker loaded from {path}")
        return ranker

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
            details = f", trees={self.tree_count_}, loss={self.loss_function}"
        return f"CatBoostRanker({status}{details})"
