from stepwise.contracts import RetryPolicy
from stepwise.utils.retry import compute_backoff


def test_backoff_grows_exponentially_and_caps():
    policy = RetryPolicy(initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=5.0)
    delays = [compute_backoff(attempt, policy) for attempt in range(1, 6)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_within_bound():
    policy = RetryPolicy(initial_interval=1.0, maximum_interval=1.0, jitter=0.5)
    for _ in range(20):
        delay = compute_backoff(3, policy)
        assert 1.0 <= delay <= 1.5
