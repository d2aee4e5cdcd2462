import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

OPENWEATHER_BASE_URL = "https://api.openweathermap.org"


def _to_fahrenheit(celsius: float) -> int:
    return round(celsius * 9 / 5 + 32)


class OpenWeatherClient:
    """Geocode a place name, then read current conditions (One Call 3.0, falling back to 2.5)."""

    def __init__(self, api_key: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=30)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        return await self.client.get(f"{OPENWEATHER_BASE_URL}{path}", params={**params, "appid": self.api_key})

    async def current(self, location: str) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        try:
            geo = await self._get("/geo/1.0/direct", {"q": location, "limit": 1})
            geo.raise_for_status()
            places = geo.json()
            if not places:
                return {"error": "not_found"}
            place = places[0]
            coords = {"lat": place["lat"], "lon": place["lon"], "units": "metric"}

            resp = await self._get("/data/3.0/onecall", {**coords, "exclude": "minutely,hourly,daily,alerts"})
            if resp.is_success:
                current = resp.json()["current"]
            else:
                logger.warning("One Call 3.0 failed (%s), trying current weather API", resp.status_code)
                resp = await self._get("/data/2.5/weather", coords)
                resp.raise_for_status()
                data = resp.json()
                current = {
                    "temp": data["main"]["temp"],
                    "feels_like": data["main"]["feels_like"],
                    "pressure": data["main"]["pressure"],
                    "humidity": data["main"]["humidity"],
                    "uvi": 0,
                    "clouds": (data.get("clouds") or {}).get("all"),
                    "visibility": data.get("visibility"),
                    "wind_speed": (data.get("wind") or {}).get("speed"),
                    "weather": data.get("weather") or [{}],
                }
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": e.response.text}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except (KeyError, IndexError, TypeError, ValueError) as e:
            return {"error": "bad_response", "detail": str(e)}

        condition = (current.get("weather") or [{}])[0]
        return {
            "location": f"{place.get('name', location)}, {place.get('country', '')}".rstrip(", "),
            "temperature": {"celsius": round(current["temp"]), "fahrenheit": _to_fahrenheit(current["temp"])},
            "feels_like": {
                "celsius": round(current["feels_like"]),
                "fahrenheit": _to_fahrenheit(current["feels_like"]),
            },
            "description": condition.get("description", ""),
            "humidity": current.get("humidity"),
            "wind_speed": current.get("wind_speed"),
            "pressure": current.get("pressure"),
            "visibility": current.get("visibility"),
            "uv_index": current.get("uvi") or 0,
            "clouds": current.get("clouds"),
            "icon": condition.get("icon", ""),
        }

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
