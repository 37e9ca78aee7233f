import pytest # type: ignore
from cardinal.lib.hyperloglog import HyperLogLog

def pytest_configure(config):
    """Add markers to the pytest configuration."""
    config.addinivalue_line("markers", "quick: mark test as quick to run")
    config.addinivalue_line("markers", "full: mark test as part of the full test suite")
    config.addinivalue_line("markers", "slow: mark test as very slow to run")

@pytest.fixture
def populated_sketch():
    """Precision-10 sketch holding 5000 distinct strings."""
    sketch = HyperLogLog(precision=10)
    sketch.add_batch(f"item{i}" for i in range(5000))
    return sketch
