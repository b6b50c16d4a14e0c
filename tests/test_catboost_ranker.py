import numpy as np
import pandas as pd
import pytest

from eventrec.models.catboost_ranker import RANKER_FEATURE_COLS, CatBoostRanker


def _synthetic_groups(n_users=20, per_user=10, seed=0):
    """Relevance driven by mf_score so the ranker has something to learn."""
    rng = np.random.default_rng(seed)
    X = pd.DataFrame(rng.random((n_users * per_user, len(RANKER_FEATURE_COLS))), columns=RANKER_FEATURE_COLS)
    y = (X["mf_score"] > 0.6).astype(int)
    groups = pd.Series(np.repeat([f"u{i:02d}" for i in range(n_users)], per_user))
    return X, y, groups


@pytest.fixture(scope="module")
def fitted_ranker():
    X, y, groups = _synthetic_groups()
    return CatBoostRanker(iterations=40, depth=3).fit(X, y, groups)


def test_fit_rejects_missing_features():
    X, y, groups = _synthetic_groups(n_users=2)
    with pytest.raises(ValueError):
        CatBoostRanker(iterations=5).fit(X.drop(columns=["mf_score"]), y, groups)


def test_ranker_prefers_relevant_rows(fitted_ranker):
    X = pd.DataFrame(0.5, index=range(2), columns=RANKER_FEATURE_COLS)
    X.loc[0, "mf_score"] = 0.95
    X.loc[1, "mf_score"] = 0.05

    scores = fitted_ranker.predict(X)
    assert scores[0] > scores[1]


def test_rank_returns_top_n_sorted(fitted_ranker):
    X, _, _ = _synthetic_groups(n_users=1, per_user=8, seed=3)
    event_ids = list(range(100, 108))

    ranked = fitted_ranker.rank(event_ids, X, n=5)

    assert len(ranked) == 5
    assert len({eid for eid, _ in ranked}) == 5
    scores = [s for _, s in ranked]
    assert scores == sorted(scores, reverse=True)


def test_rank_breaks_ties_by_event_id(fitted_ranker):
    X = pd.DataFrame(0.5, index=range(3), columns=RANKER_FEATURE_COLS)
    ranked = fitted_ranker.rank([30, 10, 20], X, n=3)
    assert [eid for eid, _ in ranked] == [10, 20, 30]


def test_rank_empty_pool(fitted_ranker):
    empty = pd.DataFrame(columns=RANKER_FEATURE_COLS, dtype=float)
    assert fitted_ranker.rank([], empty, n=5) == []
    assert len(fitted_ranker.predict(empty)) == 0


def test_saved_ranker_predicts_identically(fitted_ranker, tmp_path):
    X, _, _ = _synthetic_groups(n_users=1, per_user=6, seed=9)
    fitted_ranker.save(tmp_path / "ranker")
    loaded = CatBoostRanker.load(tmp_path / "ranker")

    assert np.allclose(loaded.predict(X), fitted_ranker.predict(X))
    assert loaded.feature_names_ == RANKER_FEATURE_COLS


def test_feature_importance_covers_all_features(fitted_ranker):
    fi = fitted_ranker.feature_importance()
    assert set(fi["feature"]) == set(RANKER_FEATURE_COLS)
    assert fi.iloc[0]["feature"] == "mf_score"


def test_unfitted_ranker_refuses_to_predict():
    with pytest.raises(ValueError):
        CatBoostRanker().predict(pd.DataFrame(columns=RANKER_FEATURE_COLS))


def test_explain_returns_top_shap_features(fitted_ranker):
    X = pd.DataFrame(0.5, index=range(2), columns=RANKER_FEATURE_COLS)
    X.loc[0, "mf_score"] = 0.95
    X.loc[1, "mf_score"] = 0.05

    explanations = fitted_ranker.explain(X, top_n=3)

    assert len(explanations) == 2
    for explanation in explanations:
        assert len(explanation) == 3
        assert set(explanation) <= set(RANKER_FEATURE_COLS)
        magnitudes = [abs(v) for v in explanation.values()]
        assert magnitudes == sorted(magnitudes, reverse=True)
    assert "mf_score" in explanations[0]


def test_tree_count_survives_save_and_load(fitted_ranker, tmp_path):
    assert fitted_ranker.tree_count_ == fitted_ranker.iterations

    fitted_ranker.save(tmp_path / "ranker")
    loaded = CatBoostRanker.load(tmp_path / "ranker")

    assert loaded.tree_count_ == fitted_ranker.tree_count_
