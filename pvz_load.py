"""Convenience runner for the standard PVZ ramp: 30s->50, 1m->100, 3m hold, 30s->0."""

import os
import sys

from pvz_core import BASE_URL_ENV, DEFAULT_BASE_URL, DEFAULT_STAGES, LoadConfig, run_with_config, setup_logging
from pvz_thresholds import DEFAULT_THRESHOLDS


def main() -> int:
    config = LoadConfig(
        base_url=os.environ.get(BASE_URL_ENV, DEFAULT_BASE_URL),
        stages=[dict(stage) for stage in DEFAULT_STAGES],
        thresholds={name: list(exprs) for name, exprs in DEFAULT_THRESHOLDS.items()},
        setup_timeout="30s",
        summary_interval=30,
    )

    setup_logging("INFO")
    return run_with_config(config)


if __name__ == "__main__":
    sys.exit(main())
