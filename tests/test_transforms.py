"""Tests for the payload transforms shared by fallback providers."""

import pytest

from ambient_cache import transforms


@pytest.mark.parametrize(
    ("degrees", "expected"),
    [(0, "N"), (44, "NE"), (90, "E"), (200, "S"), (315, "NW"), (359, "N")],
)
def test_degrees_to_cardinal(degrees, expected):
    assert transforms.degrees_to_cardinal(degrees) == expected


def test_nws_forecast_splits_current_period():
    periods = [
        {
            "name": "This Afternoon",
            "temperature": 84,
            "temperatureUnit": "F",
            "windSpeed": "10 mph",
            "windDirection": "S",
            "shortForecast": "Sunny",
            "detailedForecast": "Sunny, with a high near 84.",
        },
        {"name": "Tonight", "temperature": 68},
    ]

    weather = transforms.nws_forecast({"properties": {"periods": periods}})

    assert weather["currentWeather"]["shortForecast"] == "Sunny"
    assert weather["forecast"] == [{"name": "Tonight", "temperature": 68}]
    assert weather["hourly"] == []


def test_nws_forecast_without_periods_raises():
    with pytest.raises(ValueError, match="no periods"):
        transforms.nws_forecast({"properties": {"periods": []}})


def test_openweather_and_nws_share_a_shape():
    openweather = transforms.openweather_current(
        {
            "main": {"temp": 64.4},
            "wind": {"speed": 12.8, "deg": 90},
            "weather": [{"main": "Rain", "description": "light rain"}],
        },
    )
    nws = transforms.nws_forecast(
        {
            "properties": {
                "periods": [
                    {
                        "temperature": 64,
                        "temperatureUnit": "F",
                        "windSpeed": "13 mph",
                        "windDirection": "E",
                        "shortForecast": "Rain",
                        "detailedForecast": "Light rain.",
                    },
                ],
            },
        },
    )

    assert set(openweather) == set(nws)
    assert set(openweather["currentWeather"]) == set(nws["currentWeather"])
    assert openweather["currentWeather"]["windSpeed"] == "13 mph"
    assert openweather["currentWeather"]["windDirection"] == "E"


def test_yahoo_chart_quote_matches_global_quote_fields():
    payload = {
        "chart": {
            "result": [
                {
                    "meta": {
                        "symbol": "MSFT",
                        "regularMarketPrice": 420.0,
                        "chartPreviousClose": 400.0,
                        "regularMarketDayHigh": 421.5,
                        "regularMarketDayLow": 410.25,
                        "regularMarketVolume": 1200,
                        "regularMarketTime": 1700000000,
                    },
                    "indicators": {"quote": [{"open": [411.0]}]},
                },
            ],
            "error": None,
        },
    }

    quote = transforms.yahoo_chart_quote(payload)["Global Quote"]

    assert quote == {
        "01. symbol": "MSFT",
        "02. open": "411.0",
        "03. high": "421.5",
        "04. low": "410.25",
        "05. price": "420.0",
        "06. volume": "1200",
        "07. latest trading day": "2023-11-14",
        "08. previous close": "400.0",
        "09. change": "20.0",
        "10. change percent": "5.00%",
    }


def test_yahoo_chart_quote_without_result_raises():
    with pytest.raises(TypeError):
        transforms.yahoo_chart_quote({"chart": {"result": None, "error": {}}})


def test_transforms_are_registered_by_name():
    assert set(transforms.TRANSFORMS) == {
        "nws_forecast",
        "openweather_current",
        "yahoo_chart_quote",
    }
