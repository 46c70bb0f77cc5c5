#!/usr/bin/env python3
"""
Run full experiment demo: simulate -> aggregate -> report.

Creates data/events/<platform>/<environment>/*.csv and
artifacts/experiments/<key>/results.json + variations.csv.
"""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT / "src"))


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from togglebox.analyze import load_flag_stats, run_analysis, summarize_variations
    from togglebox.simulate import build_demo_experiment, build_demo_flag, run_traffic_simulation
    from togglebox.validation import validate_experiment, validate_flag

    data_dir = ROOT / "data" / "events"
    artifacts_dir = ROOT / "artifacts" / "experiments"
    data_dir.mkdir(parents=True, exist_ok=True)
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    flag = build_demo_flag()
    experiment = build_demo_experiment()
    validate_flag(flag)
    validate_experiment(experiment)

    print("1. Simulating traffic...")
    summary = run_traffic_simulation(
        experiment,
        flag=flag,
        n_users=3000,
        variation_effects={"green": 0.25, "orange": -0.05},
        data_dir=str(data_dir),
    )
    print(f"   Assigned: {summary['assignments']}")
    print(f"   Flag {flag.flag_key}: {summary['flag_value_a']} A / {summary['flag_value_b']} B")

    print("2. Aggregating experiment results...")
    results = run_analysis(experiment, data_dir=str(data_dir), artifacts_dir=str(artifacts_dir))
    print(f"   Status: {results.status.value}")
    for line in summarize_variations(results):
        print(f"   {line}")

    print("3. Aggregating flag stats...")
    stats = load_flag_stats(flag.platform, flag.environment, flag.flag_key, data_dir=str(data_dir))
    print(f"   {stats.total_evaluations} evaluations, {stats.unique_users_a} users on A")

    out_dir = artifacts_dir / experiment.experiment_key
    print(f"\n[OK] Demo complete. Artifacts in {out_dir}:")
    for f in sorted(out_dir.iterdir()):
        print(f"   - {f.name}")


if __name__ == "__main__":
    main()
