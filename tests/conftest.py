import pandas as pd
import pytest

from eventrec.config import RecommenderConfig
from eventrec.data_loader import InMemoryEventStore, load_snapshot
from eventrec.demo_data import build_demo_store
from eventrec.preprocessor import PreferenceAggregator
from eventrec.service import RecommenderService

NOW = pd.Timestamp("2026-03-02 12:00:00")


def make_config(model_dir, **overrides) -> RecommenderConfig:
    params = dict(
        model_dir=model_dir,
        mf_iterations=30,
        ranker_iterations=30,
        ranker_depth=4,
    )
    params.update(overrides)
    return RecommenderConfig(**params)


@pytest.fixture
def now() -> pd.Timestamp:
    return NOW


@pytest.fixture
def demo_store() -> InMemoryEventStore:
    return build_demo_store(now=NOW)


@pytest.fixture
def fast_config(tmp_path) -> RecommenderConfig:
    return make_config(tmp_path / "models")


@pytest.fixture
def demo_snapshot(demo_store):
    return load_snapshot(demo_store)


@pytest.fixture
def demo_prefs(demo_snapshot):
    return PreferenceAggregator().aggregate(demo_snapshot.interactions, demo_snapshot.clicks)


@pytest.fixture(scope="module")
def trained_service(tmp_path_factory) -> RecommenderService:
    store = build_demo_store(now=NOW)
    service = RecommenderService(store, make_config(tmp_path_factory.mktemp("models")))
    service.train(now=NOW)
    return service
