from prometheus_client import Counter


def inc(counter: Counter, *labels: str) -> None:
    """Bump a labelled counter; metrics never break a request."""
    try:
        counter.labels(*[str(v) for v in labels]).inc()
    except Exception:
        pass
