"""
Frame-select filter expressions.
"""

from numbers import Integral


def build_select_expression(*indices: int) -> str:
    """
    Build a ``-vf`` select filter that emits only the given frames.

    Indices are written in the order given and are not range-checked;
    validating against the frame count is the caller's job.

    Example:
        >>> build_select_expression(5, 15)
        "select='eq(n,5)+eq(n,15)'"
    """
    terms = []
    for index in indices:
        if isinstance(index, bool) or not isinstance(index, Integral):
            raise TypeError(f"Frame index must be an integer, got {index!r}")
        terms.append(f"eq(n,{int(index)})")
    return "select='" + "+".join(terms) + "'"
