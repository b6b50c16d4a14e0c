"""Recommender models."""

from eventrec.models.id_mapper import IdMapper
from eventrec.models.mf_recommender import MatrixFactorizationRecommender
from eventrec.models.catboost_ranker import CatBoostRanker, RANKER_FEATURE_COLS

__all__ = [
    "IdMapper",
    # Stage A (observed labels only, SGD-solved)
    "MatrixFactorizationRecommender",
    # Stage B
    "CatBoostRanker",
    "RANKER_FEATURE_COLS",
]
