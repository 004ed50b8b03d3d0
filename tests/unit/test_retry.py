from waypoint.utils.retry import compute_delay


def test_compute_delay_fixed_and_backoff():
    assert compute_delay(1, 2.0) == 2.0
    assert compute_delay(3, 2.0) == 2.0
    assert compute_delay(1, 1.0, backoff=2.0) == 1.0
    assert compute_delay(3, 1.0, backoff=2.0) == 4.0
    assert compute_delay(0, 1.0, backoff=2.0) == 1.0


def test_compute_delay_zero_base_never_waits():
    assert compute_delay(5, 0.0, backoff=3.0) == 0.0
