#!/usr/bin/env python3
"""
Accuracy and throughput benchmark for the HyperLogLog sketch.

Measures relative error against the true distinct count for several
precisions (reporting which estimation regime produced each estimate), and
compares per-item ``insert`` with vectorized ``add_batch``.
"""
import argparse
import os
import time
from datetime import datetime
import numpy as np  # type: ignore
import matplotlib  # type: ignore
matplotlib.use('Agg')
import matplotlib.pyplot as plt  # type: ignore
from cardinal.lib.hyperloglog import HyperLogLog

RESULTS_DIR = os.path.join(os.path.dirname(__file__), 'results')

PRECISION_VALUES = [8, 10, 12, 14, 16]
LOAD_FACTORS = [0.01, 0.1, 0.5, 1, 2, 3, 4, 5, 6, 10, 50]


def benchmark_accuracy(precisions, trials):
    """Mean relative error per precision and load factor (items / registers)."""
    results = {}
    for precision in precisions:
        m = 1 << precision
        results[precision] = []
        for load in LOAD_FACTORS:
            n_items = max(1, int(load * m))
            errors = []
            regimes = set()
            for seed in range(1, trials + 1):
                sketch = HyperLogLog(precision=precision, seed=seed)
                sketch.add_batch(f"item_{i}" for i in range(n_items))
                errors.append((sketch.estimate() - n_items) / n_items)
                regimes.add(sketch.regime())
            errors = np.array(errors)
            results[precision].append({
                'load': load,
                'n_items': n_items,
                'bias': float(np.mean(errors)),
                'rmse': float(np.sqrt(np.mean(errors ** 2))),
                'regimes': sorted(regimes),
            })
            print(f"p={precision:2d} n={n_items:9d} bias={np.mean(errors):+.4f} "
                  f"rmse={np.sqrt(np.mean(errors ** 2)):.4f} "
                  f"(expected {sketch.error_rate:.4f}) regimes={','.join(sorted(regimes))}")
    return results


def benchmark_add(precision, num_items):
    """Time per-item insert against add_batch."""
    items = [f"item_{i}" for i in range(num_items)]

    sketch = HyperLogLog(precision=precision)
    start_time = time.time()
    for item in items:
        sketch.insert(item)
    single_time = time.time() - start_time

    batched = HyperLogLog(precision=precision)
    start_time = time.time()
    batched.add_batch(items)
    batch_time = time.time() - start_time

    assert sketch == batched
    print(f"\nAdding {num_items} items at precision {precision}:")
    print(f"  insert:    {single_time:.3f}s ({num_items / single_time:,.0f} items/s)")
    print(f"  add_batch: {batch_time:.3f}s ({num_items / batch_time:,.0f} items/s)")
    return single_time, batch_time


def plot_accuracy(results, output_path):
    """Plot RMSE against load factor, one line per precision."""
    fig, ax = plt.subplots(figsize=(10, 6))
    for precision, rows in results.items():
        loads = [row['load'] for row in rows]
        rmse = [row['rmse'] for row in rows]
        ax.plot(loads, rmse, marker='o', label=f"p={precision}")
        ax.axhline(1.04 / np.sqrt(1 << precision), linestyle=':', linewidth=0.8)
    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('items / registers')
    ax.set_ylabel('relative RMSE')
    ax.set_title('HyperLogLog accuracy by load factor')
    ax.legend()
    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)


def main():
    parser = argparse.ArgumentParser(description="Benchmark HyperLogLog accuracy and speed")
    parser.add_argument('--precisions', type=int, nargs='+', default=PRECISION_VALUES)
    parser.add_argument('--trials', type=int, default=10)
    parser.add_argument('--num-items', type=int, default=200000)
    parser.add_argument('--no-plot', action='store_true')
    args = parser.parse_args()

    results = benchmark_accuracy(args.precisions, args.trials)
    benchmark_add(14, args.num_items)

    if not args.no_plot:
        os.makedirs(RESULTS_DIR, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = os.path.join(RESULTS_DIR, f"hll_accuracy_{timestamp}.png")
        plot_accuracy(results, output_path)
        print(f"\nPlot saved to {output_path}")


if __name__ == "__main__":
    main()
