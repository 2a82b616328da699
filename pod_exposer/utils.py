"""Utility functions for label selectors, pod keys and backoff."""

from typing import Mapping, Optional, Tuple


def parse_label_selector(selector: str) -> Tuple[str, str]:
    """
    Parse a single equality label selector.
    
    Examples:
        "k8s-app=kube-dns" -> ("k8s-app", "kube-dns")
        "tier==web" -> ("tier", "web")
    
    Raises:
        ValueError: If the selector is not of the form key=value
    """
    if not selector:
        raise ValueError("Label selector must not be empty")
    
    selector = str(selector).strip()
    
    if "==" in selector:
        key, _, value = selector.partition("==")
    else:
        key, sep, value = selector.partition("=")
        if not sep:
            raise ValueError(f"Invalid label selector {selector!r}: expected key=value")
    
    key = key.strip()
    value = value.strip()
    
    if not key or key.endswith("!") or "=" in value or "," in value:
        raise ValueError(f"Invalid label selector {selector!r}: expected key=value")
    
    return key, value


def labels_match(labels: Optional[Mapping[str, str]], selector: Mapping[str, str]) -> bool:
    """Check if the given labels contain every key/value pair of the selector."""
    if not selector:
        return False
    
    labels = labels or {}
    
    for key, value in selector.items():
        if labels.get(key) != value:
            return False
    
    return True


def pod_key(namespace: str, name: str) -> str:
    """Create a cache key from namespace and name."""
    return f"{namespace}/{name}"


def backoff_delay(attempt: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """
    Exponential backoff delay for the given attempt number.
    
    Examples:
        attempt=1 -> base
        attempt=3 -> base * 4
    """
    if attempt < 1:
        return 0.0
    return min(maximum, base * (2 ** (attempt - 1)))
