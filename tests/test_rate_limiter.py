import threading

from multiverse.datatypes.discord_datatypes import UserID
from multiverse.safety.rate_limiter import RateLimiter


def test_second_message_inside_interval_is_rejected() -> None:
    limiter = RateLimiter(2000)
    sender = UserID(1)

    assert limiter.try_accept(sender, now=10_000) is True
    assert limiter.try_accept(sender, now=11_999) is False


def test_message_exactly_at_interval_is_accepted() -> None:
    limiter = RateLimiter(2000)
    sender = UserID(1)

    assert limiter.try_accept(sender, now=10_000)
    assert limiter.try_accept(sender, now=12_000)


def test_rejection_does_not_move_the_window() -> None:
    limiter = RateLimiter(2000)
    sender = UserID(1)

    limiter.try_accept(sender, now=0)
    assert not limiter.try_accept(sender, now=1500)
    assert limiter.last_accepted(sender) == 0
    assert limiter.try_accept(sender, now=2000)


def test_senders_are_independent() -> None:
    limiter = RateLimiter(2000)

    assert limiter.try_accept(UserID(1), now=0)
    assert limiter.try_accept(UserID(2), now=1)


def test_retry_after_ms() -> None:
    limiter = RateLimiter(2000)
    sender = UserID(7)

    assert limiter.retry_after_ms(sender, now=0) == 0
    limiter.try_accept(sender, now=1000)
    assert limiter.retry_after_ms(sender, now=1500) == 1500
    assert limiter.retry_after_ms(sender, now=5000) == 0


def test_purge_forgets_expired_senders() -> None:
    limiter = RateLimiter(2000)
    limiter.try_accept(UserID(1), now=0)
    limiter.try_accept(UserID(2), now=1500)

    assert limiter.purge(now=2500) == 1
    assert limiter.last_accepted(UserID(1)) is None
    assert limiter.last_accepted(UserID(2)) == 1500


def test_check_and_set_is_atomic_under_threads() -> None:
    limiter = RateLimiter(2000)
    sender = UserID(1)
    results: list[bool] = []
    barrier = threading.Barrier(16)

    def worker() -> None:
        barrier.wait()
        results.append(limiter.try_accept(sender, now=5000))

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
