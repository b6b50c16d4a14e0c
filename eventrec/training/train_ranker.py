"""Train / query the two-stage event recommender: MF → CatBoost Ranker.

Sub-commands:
    train       run the full pipeline, publish a new model version and log
                params, sizes, timings and feature importances to MLflow
    recommend   print the top-N events for a user from the published version

Data source is a PostgreSQL DSN (``--dsn`` or ``EVENTREC_DSN``) or, with
``--demo``, the built-in demo catalogue.

Example:
    # Demo run, artifacts under ./data/models/event_recommender
    python -m eventrec.training.train_ranker train --demo

    # Production data
    python -m eventrec.training.train_ranker train \\
        --dsn postgresql://app:secret@db:5432/events \\
        --mf-factors 64 --ranker-iterations 400

    python -m eventrec.training.train_ranker recommend --demo --user alice -n 6
"""
import argparse
import logging
import os
import tempfile
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import mlflow
from dotenv import load_dotenv

from eventrec.config import MODEL_DIR, RecommenderConfig
from eventrec.data_loader import EventStore
from eventrec.demo_data import EVENT_TITLES, build_demo_store
from eventrec.model_registry import ModelRegistry
from eventrec.service import RecommenderService
from eventrec.training.orchestrator import TrainingOrchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_store(dsn: Optional[str], demo: bool) -> EventStore:
    if demo or not dsn:
        if not demo:
            logger.warning("No DSN given; falling back to the demo store")
        return build_demo_store()
    from eventrec.database import PostgresEventStore

    return PostgresEventStore(dsn)


def build_config(args: argparse.Namespace) -> RecommenderConfig:
    return RecommenderConfig(
        model_dir=Path(args.model_dir),
        candidates_per_user=args.n_candidates,
        mf_factors=args.mf_factors,
        mf_iterations=args.mf_iterations,
        mf_regularization=args.mf_regularization,
        mf_learning_rate=args.mf_learning_rate,
        ranker_iterations=args.ranker_iterations,
        ranker_learning_rate=args.ranker_learning_rate,
        ranker_depth=args.ranker_depth,
        ranker_loss=args.ranker_loss,
    )


def _mlflow_params(config: RecommenderConfig) -> Dict:
    params = asdict(config)
    params.pop("rating_scores")
    params["model_dir"] = str(config.model_dir)
    return params


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def train(
    store: EventStore,
    config: RecommenderConfig,
    mlflow_experiment: str = "event_recommender",
    run_name: Optional[str] = None,
) -> Dict:
    """Run one training pass inside an MLflow run; returns the summary dict."""
    if run_name is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        run_name = f"mf{config.mf_factors}_{config.ranker_loss.lower()}_{ts}"

    mlflow.set_experiment(mlflow_experiment)

    with mlflow.start_run(run_name=run_name):
        logger.info("=" * 60)
        logger.info(f"MLflow run : {run_name}")
        logger.info(f"Experiment : {mlflow_experiment}")
        logger.info("=" * 60)

        mlflow.log_params(_mlflow_params(config))

        registry = ModelRegistry(config.model_dir, config.keep_versions)
        orchestrator = TrainingOrchestrator(store, config=config, registry=registry)
        summary = orchestrator.run()

        mlflow.log_metric("n_users", summary.n_users)
        mlflow.log_metric("n_events", summary.n_events)
        mlflow.log_metric("n_pairs", summary.n_pairs)
        mlflow.log_metric("ranker_n_rows", summary.n_ranker_rows)
        mlflow.log_metric(
            "ranker_pos_rate",
            round(summary.n_ranker_positives / max(summary.n_ranker_rows, 1), 4),
        )
        mlflow.log_metric("mf_train_rmse", summary.mf_train_rmse)
        if summary.ranker_tree_count is not None:
            mlflow.log_metric("ranker_tree_count", summary.ranker_tree_count)
        for stage, sec in summary.timings_sec.items():
            mlflow.log_metric(f"{stage}_time_sec", sec)

        fi_df = orchestrator.model_.ranker.feature_importance()
        logger.info("Top-10 feature importances:")
        for _, row in fi_df.head(10).iterrows():
            logger.info(f"  {row['feature']:25s} {row['importance']:.2f}")

        with tempfile.TemporaryDirectory() as tmp:
            fi_path = Path(tmp) / "feature_importances.csv"
            fi_df.to_csv(fi_path, index=False)
            mlflow.log_artifact(str(fi_path))

        mlflow.log_artifacts(str(registry.version_dir(summary.version)), artifact_path="model")
        logger.info(f"Version {summary.version} published and logged to MLflow.")
        return summary.to_dict()


def recommend(
    store: EventStore,
    config: RecommenderConfig,
    user_id: str,
    top_n: int = 6,
    explain: bool = False,
) -> None:
    service = RecommenderService(store, config)
    if not service.models_exist():
        logger.warning(f"No trained models in {config.model_dir}. Run `train` first.")
        return

    results = service.recommend_with_scores(user_id, top_n=top_n, explain=explain)
    logger.info("=" * 60)
    logger.info(f"Top-{top_n} for {user_id!r}")
    logger.info("=" * 60)
    for rank, item in enumerate(results, start=1):
        title = EVENT_TITLES.get(item["event_id"], "")
        logger.info(f"  {rank:>2}. {item['event_id']!s:<8} {title:<22} {item['score']:.4f}")
        if explain:
            for feature, value in item.get("explanation", {}).items():
                logger.info(f"        {feature:<25} {value:+.4f}")
    logger.info("=" * 60)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    parser = argparse.ArgumentParser(
        description="Train / query the two-stage event recommender: MF + CatBoost Ranker",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("command", choices=["train", "recommend"])

    src = parser.add_argument_group("Data source")
    src.add_argument("--dsn", type=str, default=os.environ.get("EVENTREC_DSN"),
                     help="PostgreSQL DSN of the application database")
    src.add_argument("--demo", action="store_true", help="Use the built-in demo catalogue")
    src.add_argument("--model-dir", type=str, default=str(MODEL_DIR))

    # MF
    mf = parser.add_argument_group("Matrix factorization (Stage 1)")
    mf.add_argument("--mf-factors", type=int, default=32)
    mf.add_argument("--mf-iterations", type=int, default=60)
    mf.add_argument("--mf-regularization", type=float, default=0.025)
    mf.add_argument("--mf-learning-rate", type=float, default=0.05)
    mf.add_argument("--n-candidates", type=int, default=100,
                    help="MF candidates forwarded to the ranker")

    # Ranker
    rk = parser.add_argument_group("CatBoost Ranker (Stage 2)")
    rk.add_argument("--ranker-iterations", type=int, default=200)
    rk.add_argument("--ranker-learning-rate", type=float, default=0.1)
    rk.add_argument("--ranker-depth", type=int, default=6)
    rk.add_argument("--ranker-loss", type=str, default="YetiRank",
                    choices=["YetiRank", "PairLogit"])

    # Run
    parser.add_argument("--experiment", type=str, default="event_recommender")
    parser.add_argument("--run-name", type=str, default=None)

    # Recommend
    rec = parser.add_argument_group("recommend")
    rec.add_argument("--user", type=str, default="alice")
    rec.add_argument("-n", "--top-n", type=int, default=6)
    rec.add_argument("--explain", action="store_true", help="Show top SHAP contributions")

    args = parser.parse_args()
    store = build_store(args.dsn, args.demo)
    config = build_config(args)

    if args.command == "train":
        train(store, config, mlflow_experiment=args.experiment, run_name=args.run_name)
    else:
        recommend(store, config, args.user, top_n=args.top_n, explain=args.explain)


if __name__ == "__main__":
    main()
