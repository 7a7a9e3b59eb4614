"""Payload transforms shared by a data source's providers.

A source with fallback providers must cache one shape no matter which
provider answered. Weather payloads are normalized to::

    {"currentWeather": {...}, "forecast": [...], "hourly": [...],
     "metadata": {"source": ...}}

and Yahoo Finance quotes are reshaped into Alpha Vantage's ``Global Quote``
document so dashboards read both the same way.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeAlias

Transform: TypeAlias = Callable[[Any], Any]

CARDINALS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


def degrees_to_cardinal(degrees: float) -> str:
    return CARDINALS[round(degrees / 45) % len(CARDINALS)]


def nws_forecast(payload: dict[str, Any]) -> dict[str, Any]:
    """Normalize an NWS gridpoint forecast."""
    periods = payload["properties"]["periods"]
    if not periods:
        msg = "NWS forecast has no periods"
        raise ValueError(msg)
    current = periods[0]
    return {
        "currentWeather": {
            "temperature": current["temperature"],
            "temperatureUnit": current["temperatureUnit"],
            "windSpeed": current["windSpeed"],
            "windDirection": current["windDirection"],
            "shortForecast": current["shortForecast"],
            "detailedForecast": current["detailedForecast"],
        },
        "forecast": periods[1:],
        "hourly": [],
        "metadata": {"source": "NWS"},
    }


def openweather_current(payload: dict[str, Any]) -> dict[str, Any]:
    """Normalize OpenWeather current conditions (imperial units)."""
    conditions = payload["weather"][0]
    wind = payload["wind"]
    return {
        "currentWeather": {
            "temperature": round(payload["main"]["temp"]),
            "temperatureUnit": "F",
            "windSpeed": f"{round(wind['speed'])} mph",
            "windDirection": degrees_to_cardinal(wind.get("deg", 0)),
            "shortForecast": conditions["main"],
            "detailedForecast": conditions["description"],
        },
        "forecast": [],
        "hourly": [],
        "metadata": {"source": "OpenWeather"},
    }


def yahoo_chart_quote(payload: dict[str, Any]) -> dict[str, Any]:
    """Reshape a Yahoo Finance chart response into a ``Global Quote``."""
    result = payload["chart"]["result"][0]
    meta = result["meta"]
    price = meta["regularMarketPrice"]
    previous_close = meta.get("chartPreviousClose") or meta.get("previousClose") or 0
    change = price - previous_close if previous_close else 0
    percent = change / previous_close * 100 if previous_close else 0

    opens = result.get("indicators", {}).get("quote", [{}])[0].get("open") or []
    market_time = meta.get("regularMarketTime")
    trading_day = (
        datetime.fromtimestamp(market_time, tz=timezone.utc).date()
        if market_time
        else datetime.now(timezone.utc).date()
    )

    return {
        "Global Quote": {
            "01. symbol": str(meta["symbol"]),
            "02. open": str(opens[0] if opens and opens[0] is not None else price),
            "03. high": str(meta.get("regularMarketDayHigh", price)),
            "04. low": str(meta.get("regularMarketDayLow", price)),
            "05. price": str(price),
            "06. volume": str(meta.get("regularMarketVolume", 0)),
            "07. latest trading day": trading_day.isoformat(),
            "08. previous close": str(previous_close),
            "09. change": str(round(change, 4)),
            "10. change percent": f"{percent:.2f}%",
        },
        "metadata": {"source": "Yahoo Finance"},
    }


TRANSFORMS: dict[str, Transform] = {
    "nws_forecast": nws_forecast,
    "openweather_current": openweather_current,
    "yahoo_chart_quote": yahoo_chart_quote,
}
