#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from tender_review.queue_backend import create_queue_from_env
from tender_review.routes._deps import build_pipeline
from tender_review.store import store
from tender_review.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Drive queued tender review jobs to completion.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level for the worker process.")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    runtime = create_worker_runtime_from_env(
        store=store,
        queue_backend=create_queue_from_env(),
        pipeline_factory=build_pipeline,
    )
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
