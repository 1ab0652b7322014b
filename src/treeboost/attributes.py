"""
Attribute resolution for the tree learner.

Each feature column is either quantitative (ordered, split on thresholds) or
categorical (split on equality). Types may be given explicitly, as a list or
as the option string "Q,C,Q", or are inferred from the data.
"""

from enum import Enum
from math import ceil, sqrt
from typing import List, Optional, Sequence, Union

from .exceptions import ConfigError


class AttributeType(Enum):
    QUANTITATIVE = "Q"
    CATEGORICAL = "C"


AttributeSpec = Union[str, Sequence[Union[str, AttributeType]], None]


def _to_attribute(token: Union[str, AttributeType]) -> AttributeType:
    if isinstance(token, AttributeType):
        return token
    try:
        return AttributeType(str(token).strip().upper())
    except ValueError:
        raise ConfigError(f"Unexpected attribute type: {token!r}") from None


def resolve_attributes(spec: AttributeSpec) -> Optional[List[AttributeType]]:
    """
    Parse explicit attribute types.

    Args:
        spec: None, a comma separated string such as "Q,C,Q" or "[Q,C,Q]",
            or a sequence of AttributeType / "Q" / "C".

    Returns:
        List of AttributeType, or None when types should be inferred.
    """
    if spec is None:
        return None
    if isinstance(spec, str):
        stripped = spec.strip().strip("[]")
        if not stripped:
            return None
        return [_to_attribute(tok) for tok in stripped.split(",")]
    return [_to_attribute(tok) for tok in spec]


def attribute_types(
    attributes: Optional[Sequence[AttributeType]], n_features: int
) -> List[AttributeType]:
    """Return one attribute per column, inferring quantitative when unset."""
    if attributes is None:
        return [AttributeType.QUANTITATIVE] * n_features
    if len(attributes) != n_features:
        raise ConfigError(
            f"Number of attribute types ({len(attributes)}) does not match "
            f"the number of features ({n_features})"
        )
    return list(attributes)


def compute_num_input_vars(num_vars: Optional[float], n_features: int) -> int:
    """
    Number of candidate features drawn at each split.

    None gives ceil(sqrt(n_features)); a value in (0, 1] is a fraction of
    n_features; a larger value is an absolute count capped at n_features.
    """
    if num_vars is None:
        n = int(ceil(sqrt(n_features)))
    elif num_vars <= 0:
        raise ConfigError(f"Invalid number of variables: {num_vars}")
    elif num_vars <= 1:
        n = int(num_vars * n_features)
    else:
        n = int(num_vars)
    return min(max(n, 1), n_features)
