#!/usr/bin/env python3
"""
Count distinct visitors across shards and ship the result as text.

Each worker owns a sketch created from a shared template, so all shards use
the same precision and hash seed and can be merged afterwards.
"""
import random
from cardinal import HyperLogLog


def main():
    random.seed(42)
    template = HyperLogLog.from_error_rate(0.01)
    shards = [HyperLogLog.from_template(template) for _ in range(4)]

    visitors = [f"visitor-{random.randrange(50000)}" for _ in range(200000)]
    for i, visitor in enumerate(visitors):
        shards[i % len(shards)].insert(visitor)

    # Shards travel as base64 text, e.g. through a message queue
    payloads = [shard.serialize_text() for shard in shards]

    total = HyperLogLog.from_template(template)
    for payload in payloads:
        total.merge(HyperLogLog.deserialize(payload))

    exact = len(set(visitors))
    estimate = total.estimate()
    print(f"precision:  {total.precision} ({total.num_registers} registers)")
    print(f"exact:      {exact}")
    print(f"estimate:   {estimate:.0f}")
    print(f"rel. error: {abs(estimate - exact) / exact:.4f} (expected ~{total.error_rate:.4f})")
    print(f"regime:     {total.regime()}")


if __name__ == "__main__":
    main()
