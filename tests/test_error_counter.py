from scannode.error_counter import ErrorCounter


def always(_err):
    return True


def never(_err):
    return False


def test_reaches_limit_after_consecutive_errors():
    counter = ErrorCounter(3, always)
    results = [counter.too_many_errs(RuntimeError("x")) for _ in range(4)]
    assert results == [False, False, True, True]


def test_no_error_resets_count():
    counter = ErrorCounter(3, always)
    counter.too_many_errs(RuntimeError("x"))
    counter.too_many_errs(RuntimeError("x"))
    assert counter.too_many_errs(None) is False
    assert counter.too_many_errs(RuntimeError("x")) is False
    assert counter.too_many_errs(RuntimeError("x")) is False
    assert counter.too_many_errs(RuntimeError("x")) is True


def test_non_critical_errors_never_count():
    counter = ErrorCounter(1, never)
    assert [counter.too_many_errs(RuntimeError("x")) for _ in range(5)] == [False] * 5


def test_non_critical_error_resets_count():
    counter = ErrorCounter(2, lambda err: isinstance(err, TimeoutError))
    assert counter.too_many_errs(TimeoutError()) is False
    assert counter.too_many_errs(ValueError()) is False
    assert counter.too_many_errs(TimeoutError()) is False
    assert counter.too_many_errs(TimeoutError()) is True