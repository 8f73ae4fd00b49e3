"""Volume gate: raw normalized volume -> active flag."""


def evaluate(sample: float, threshold: float) -> bool:
    """Return True when `sample` is strictly above `threshold`.

    Pure and stateless. The orchestrator uses a low threshold for the
    user-listening flag and a higher one for the agent-talking flag.
    """
    return sample > threshold


def check_threshold(threshold: float) -> float:
    """Validate a threshold for the normalized 0..1 volume domain."""
    if not 0.0 <= threshold < 1.0:
        raise ValueError(f"threshold must satisfy 0 <= t < 1, got {threshold!r}")
    return float(threshold)
