"""
SWC structure types.

See http://www.neuronland.org/NLMorphologyConverter/MorphologyFormats/SWC/Spec.html
"""

from typing import List, Tuple

SWC_UNDEFINED = 0
SWC_SOMA = 1
SWC_AXON = 2
SWC_DENDRITE = 3
SWC_APICAL_DENDRITE = 4
SWC_FORK_POINT = 5
SWC_END_POINT = 6
SWC_CUSTOM = 7

SWC_UNDEFINED_LABEL = "undefined"
SWC_SOMA_LABEL = "soma"
SWC_AXON_LABEL = "axon"
SWC_DENDRITE_LABEL = "(basal) dendrite"
SWC_APICAL_DENDRITE_LABEL = "apical dendrite"
SWC_FORK_POINT_LABEL = "fork point"
SWC_END_POINT_LABEL = "end point"
SWC_CUSTOM_LABEL = "custom"

_SWC_TYPES: List[Tuple[int, str]] = [
    (SWC_UNDEFINED, SWC_UNDEFINED_LABEL),
    (SWC_SOMA, SWC_SOMA_LABEL),
    (SWC_AXON, SWC_AXON_LABEL),
    (SWC_DENDRITE, SWC_DENDRITE_LABEL),
    (SWC_APICAL_DENDRITE, SWC_APICAL_DENDRITE_LABEL),
    (SWC_FORK_POINT, SWC_FORK_POINT_LABEL),
    (SWC_END_POINT, SWC_END_POINT_LABEL),
    (SWC_CUSTOM, SWC_CUSTOM_LABEL),
]

# RGB in [0, 1]
DEFAULT_COLOR = (0.5, 0.5, 0.5)
_SWC_COLORS = {
    SWC_SOMA: (0.0, 0.0, 1.0),
    SWC_AXON: (1.0, 0.0, 0.0),
    SWC_DENDRITE: (0.0, 1.0, 0.0),
    SWC_APICAL_DENDRITE: (0.0, 1.0, 1.0),
    SWC_FORK_POINT: (1.0, 0.784, 0.0),
    SWC_END_POINT: (1.0, 0.686, 0.686),
    SWC_CUSTOM: (1.0, 1.0, 0.0),
}


def swc_types() -> List[int]:
    return [value for value, _ in _SWC_TYPES]


def swc_type_names() -> List[str]:
    return [label for _, label in _SWC_TYPES]


def is_valid_swc_type(swc_type: int) -> bool:
    return 0 <= int(swc_type) < len(_SWC_TYPES)


def swc_type_name(swc_type: int) -> str:
    """Label for an SWC type; unknown values read as "undefined"."""
    if not is_valid_swc_type(swc_type):
        return SWC_UNDEFINED_LABEL
    return _SWC_TYPES[int(swc_type)][1]


def swc_color(swc_type: int) -> Tuple[float, float, float]:
    return _SWC_COLORS.get(int(swc_type), DEFAULT_COLOR)
