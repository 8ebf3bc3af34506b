"""
Weather lookup through the Open-Meteo geocoding and forecast APIs.
"""

from __future__ import annotations

from typing import Any

import httpx

from pydantic import BaseModel, Field

from core.constants import GEOCODING_API_URL, WEATHER_API_URL
from tools.base import ToolContext, ToolSpec
from utils.logger import logger


class GetWeatherInput(BaseModel):
    latitude: float | None = None
    longitude: float | None = None
    city: str | None = Field(default=None, description="City name (e.g., 'San Francisco', 'New York', 'London')")


async def geocode_city(client: httpx.AsyncClient, city: str) -> tuple[float, float] | None:
    """Resolve a city name to coordinates, or None when nothing matched."""
    try:
        response = await client.get(
            GEOCODING_API_URL,
            params={"name": city, "count": 1, "language": "en", "format": "json"},
        )
        if response.status_code != 200:
            return None
        results = response.json().get("results") or []
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Geocoding failed for {city!r}: {e}")
        return None

    if not results:
        return None
    return results[0]["latitude"], results[0]["longitude"]


async def get_weather(args: GetWeatherInput, ctx: ToolContext) -> dict[str, Any]:
    if args.city:
        coords = await geocode_city(ctx.http_client, args.city)
        if coords is None:
            return {"error": f'Could not find coordinates for "{args.city}". Please check the city name.'}
        latitude, longitude = coords
    elif args.latitude is not None and args.longitude is not None:
        latitude, longitude = args.latitude, args.longitude
    else:
        return {"error": "Please provide either a city name or both latitude and longitude coordinates."}

    response = await ctx.http_client.get(
        WEATHER_API_URL,
        params={
            "latitude": latitude,
            "longitude": longitude,
            "current": "temperature_2m",
            "hourly": "temperature_2m",
            "daily": "sunrise,sunset",
            "timezone": "auto",
        },
    )
    weather: dict[str, Any] = response.json()
    if args.city:
        weather["cityName"] = args.city
    return weather


GET_WEATHER = ToolSpec(
    name="getWeather",
    description="Get the current weather at a location. You can provide either coordinates or a city name.",
    input_model=GetWeatherInput,
    execute=get_weather,
    needs_approval=True,
)
