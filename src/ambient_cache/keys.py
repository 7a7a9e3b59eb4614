"""Cache key construction.

Keys are ``"<namespace>:<suffix>"`` where the suffix is derived from
normalized request parameters, so equivalent requests map to one entry
(e.g. ``weather:30.9386,-88.6358`` or ``stock:AAPL``).
"""

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Literal, TypeAlias

COORDINATE_PRECISION = 4
MAX_LATITUDE = 90.0
MAX_LONGITUDE = 180.0

Params: TypeAlias = Mapping[str, Any]
KeyBuilder: TypeAlias = Callable[[Params], str]
KeyStyle: TypeAlias = Literal["coordinates", "symbol", "static", "params"]


def coordinate_key(
    namespace: str,
    lat: float | str,
    lon: float | str,
    precision: int = COORDINATE_PRECISION,
) -> str:
    """Build a key from a latitude/longitude pair rounded to ``precision``.

    Raises:
        ValueError: If either coordinate is not a number or is out of range.
    """
    lat_value = float(lat)
    lon_value = float(lon)
    if not -MAX_LATITUDE <= lat_value <= MAX_LATITUDE:
        msg = f"Latitude out of range: {lat}"
        raise ValueError(msg)
    if not -MAX_LONGITUDE <= lon_value <= MAX_LONGITUDE:
        msg = f"Longitude out of range: {lon}"
        raise ValueError(msg)
    return f"{namespace}:{lat_value:.{precision}f},{lon_value:.{precision}f}"


def symbol_key(namespace: str, symbol: str) -> str:
    """Build a key from a ticker symbol, upper-cased and stripped."""
    normalized = symbol.strip().upper()
    if not normalized:
        msg = "Symbol cannot be empty"
        raise ValueError(msg)
    return f"{namespace}:{normalized}"


def static_key(namespace: str, name: str) -> str:
    """Build a key for a parameterless resource such as ``space:launches``."""
    return f"{namespace}:{name}"


def _query_form(params: Params) -> str:
    return "&".join(f"{k}={params[k]}" for k in sorted(params))


def params_key(namespace: str, params: Params) -> str:
    """Build a key from arbitrary parameters in sorted query-string form."""
    if not params:
        return namespace
    return f"{namespace}:{_query_form(params)}"


def _style_builder(style: KeyStyle, namespace: str, name: str) -> KeyBuilder:
    if style == "coordinates":
        return lambda params: coordinate_key(namespace, params["lat"], params["lon"])
    if style == "symbol":
        return lambda params: symbol_key(namespace, params["symbol"])
    if style == "static":
        return lambda _params: static_key(namespace, name)
    if style == "params":
        return lambda params: params_key(namespace, params)
    msg = f"Unknown key style: {style}"
    raise ValueError(msg)


def key_builder(
    style: KeyStyle,
    namespace: str,
    name: str,
    key_fields: Sequence[str] = (),
    defaults: Params | None = None,
) -> KeyBuilder:
    """Return a key builder for a configured data source.

    Args:
        style: How request params map to the key suffix. ``coordinates``
            reads ``lat`` and ``lon``, ``symbol`` reads ``symbol``, ``static``
            ignores params and uses ``name``, ``params`` uses all of them.
        namespace: Key prefix shared by the source's entries.
        name: Source name, used as the suffix for ``static`` keys.
        key_fields: Further params appended to the key in query-string form
            (e.g. ``iss_passes:30.9386,-88.6358:days=5&min_elevation=10``).
        defaults: Param values the fetcher uses when a request omits them,
            so explicit and defaulted requests share one key.
    """
    build = _style_builder(style, namespace, name)
    if not key_fields and not defaults:
        return build

    defaults = dict(defaults or {})

    def build_with_fields(params: Params) -> str:
        merged = {**defaults, **params}
        key = build(merged)
        extra = {f: merged[f] for f in key_fields if f in merged}
        return f"{key}:{_query_form(extra)}" if extra else key

    return build_with_fields
