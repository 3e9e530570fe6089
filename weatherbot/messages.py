"""
Message formatting for forecast and alert posts.
"""

import hashlib
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from .filters import parse_datetime

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 280

# Wind arrows point where the wind blows to, indexed by round(deg / 45)
WIND_ARROWS = ["⬇️", "↙️", "⬅️", "↖️", "⬆️", "↗️", "➡️", "↘️"]

GENERAL_JOKES = [
    "What's the difference between weather and climate? You can't weather a tree, but you can climate.",
    "I tried to catch some fog earlier. I mist.",
    "Whether the weather be fine, or whether the weather be not, we'll weather the weather, whatever the weather.",
]

HOT_JOKES = [
    "It's so hot the trees are whistling for the dogs.",
]

LATE_MESSAGES = [
    "Sorry this forecast is late. I overslept.",
    "This forecast is fashionably late.",
    "Better late than never. Sorry for the delay!",
]

ERROR_MESSAGES = [
    "I couldn't get the forecast this time. Try looking out the window.",
    "Forecast unavailable. The clouds are keeping secrets today.",
]

ALERT_FAILURE_MESSAGE = (
    "Failed to fetch weather alert data. There could be a weather alert currently."
)

TUTORIALS = [
    "The beaufort scale is a way of measuring wind speed based on observing things "
    "blown by the wind rather than using instruments.",
    "Temperatures are shown as [min,max]°C for each 3 hour window.",
    "Wind arrows point in the direction the wind is blowing towards.",
]

BEAUFORT_SCALE = [
    (0.5, '"calm"', "Smoke rises vertically."),
    (1.6, '"light air"', "Wind direction is shown by smoke drift but not by wind vanes."),
    (3.4, 'a "light breeze"', "Wind is felt on the face and leaves rustle."),
    (5.6, 'a "gentle breeze"', "Leaves and small twigs are moved. Light flags are extended."),
    (8.0, 'a "moderate breeze"', "Dust and loose paper are raised. Small branches are moved."),
    (10.8, 'a "fresh breeze"', "Small trees are swayed. Crested wavelets form on inland waters."),
    (13.9, 'a "strong breeze"', "Large branches are moved. Umbrellas are used with difficulty."),
    (17.2, 'a "near gale"', "Whole trees are moved. There is resistance when walking against the wind."),
    (20.8, 'a "gale"', "Twigs are broken off trees. The wind impedes progress."),
    (24.5, 'a "strong gale"', "Slight structural damage is caused (chimney pots and slates removed)."),
    (28.5, "a storm", "Trees are uprooted. There is considerable structural damage."),
    (32.7, 'a "violent storm"', "A very rarely experienced event accompanied by widespread damage."),
]


@dataclass
class Extra:
    """A bonus statement appended to a forecast."""
    type: str
    statement: str


class MessageError(Exception):
    """Forecast data could not be turned into a message."""
    pass


def pick_random(items: Sequence[Any], rng: Optional[random.Random] = None) -> Any:
    if not items:
        raise ValueError("Cannot pick random member of empty sequence")
    return (rng or random).choice(items)


def condition_symbol(code: int) -> str:
    """Emoji for an OpenWeatherMap condition code."""
    if 200 <= code < 300:
        return "⛈️"
    if 300 <= code < 400:
        return "🌦️"
    if 500 <= code < 600:
        return "🌧️"
    if 600 <= code < 700:
        return "🌨️"
    if 700 <= code < 800:
        return "🌫️"
    if code == 800:
        return "☀️"
    if code in (801, 802):
        return "⛅"
    return "☁️"


def wind_arrow(degrees: float) -> str:
    return WIND_ARROWS[round(degrees / 45) % 8]


def _local_time(entry: Dict[str, Any], offset_seconds: int) -> datetime:
    return datetime.fromtimestamp(entry["dt"], tz=timezone.utc) + timedelta(seconds=offset_seconds)


def format_forecast(data: Dict[str, Any], windows: int = 3) -> str:
    """Condition, temperature and wind for the next ``windows`` 3h windows."""
    try:
        offset = int(data.get("city", {}).get("timezone", 0))
        lines = ["Forecast"]
        for entry in data["list"][:windows]:
            main = entry["main"]
            wind = entry["wind"]
            lines.append(
                f"{_local_time(entry, offset):%H}:00:{condition_symbol(entry['weather'][0]['id'])}, "
                f"[{round(main['temp_min'])},{round(main['temp_max'])}]°C, "
                f"💨 {wind['speed']:.2g} m/s {wind_arrow(wind['deg'])}"
            )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise MessageError(f"Malformed forecast data: {e!r}") from e
    return "\n".join(lines) + "\n\n"


def beaufort_statement(wind_speed: float) -> str:
    description, fact = 'a "hurricane force"', "Causes devastation."
    for limit, name, detail in BEAUFORT_SCALE:
        if wind_speed < limit:
            description, fact = name, detail
            break
    return f"A {wind_speed:.2g}m/s wind is {description} on the beaufort scale. {fact}"


class ExtraGenerator:
    """Picks a random bonus statement for each forecast."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def get_extra(self, data: Dict[str, Any]) -> Extra:
        roll = self.rng.random()
        current = data["list"][0]

        if roll < 0.01:
            logger.info("Generating joke")
            return Extra("joke", self.get_joke(current))
        if roll < 0.1:
            logger.info("Generating tutorial")
            return Extra("tutorial", pick_random(TUTORIALS, self.rng))
        if roll < 0.35:
            logger.info("Generating trivia")
            return Extra("beaufort", beaufort_statement(current["wind"]["speed"]))

        stat = pick_random(["precipitation", "precipitation", "pressure", "humidity", "cloudiness"], self.rng)
        logger.info(f"Generating extra stat: {stat}")
        return self.get_extra_stat(stat, data)

    def get_joke(self, current: Dict[str, Any]) -> str:
        pool = list(GENERAL_JOKES)
        main = current.get("main", {})
        if (main.get("temp_min", 0) + main.get("temp_max", 0)) / 2 >= 30:
            pool.extend(HOT_JOKES)
        return pick_random(pool, self.rng)

    def get_extra_stat(self, stat: str, data: Dict[str, Any]) -> Extra:
        offset = int(data.get("city", {}).get("timezone", 0))
        entries = data["list"][:3]

        if stat == "precipitation":
            lines = []
            for entry in entries:
                rain = (entry.get("rain") or {}).get("3h", 0)
                snow = (entry.get("snow") or {}).get("3h", 0)
                if rain or snow:
                    parts = [f"{rain:.2f} mm rain"] if rain else []
                    if snow:
                        parts.append(f"{snow:.2f} mm snow")
                    lines.append(f"{_local_time(entry, offset):%H}:00: {', '.join(parts)}.")
            if lines:
                return Extra("precipitation", "Expected Precipitation:\n" + "\n".join(lines))
            stat = pick_random(["pressure", "humidity", "cloudiness"], self.rng)

        if stat == "pressure":
            values = [f"{e['main'].get('grnd_level', e['main'].get('pressure'))}hPa" for e in entries]
            title = "Expected Pressure"
        elif stat == "humidity":
            values = [f"{e['main']['humidity']}%" for e in entries]
            title = "Expected Humidity"
        elif stat == "cloudiness":
            values = [f"{e['clouds']['all']}%" for e in entries]
            title = "Expected Cloud Coverage"
        else:
            raise MessageError(f'Could not get extra stat "{stat}"')

        lines = [f"{_local_time(e, offset):%H}:00: {v}" for e, v in zip(entries, values)]
        return Extra(stat, f"{title}:\n" + "\n".join(lines))


def fit(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[:limit - 1].rstrip() + "…"


def format_alert(record: Dict[str, Any]) -> str:
    """Short warning post for one alert record."""
    properties = record.get("properties") or {}
    headline = properties.get("headline") or properties.get("event") or record.get("title")
    if not headline:
        raise MessageError("Alert has no headline or event")

    lines = [f"⚠️ {headline}"]
    area = properties.get("areaDesc")
    if area:
        lines.append(f"Areas: {area}")
    until = parse_datetime(properties.get("ends") or properties.get("expires"))
    if until is not None:
        lines.append(f"Until {until:%b %d %I:%M %p}")
    instruction = properties.get("instruction")
    if instruction:
        lines.append(" ".join(instruction.split()))
    return fit("\n".join(lines))


def content_hash(*parts: Any) -> str:
    """SHA-256 over the joined parts, used to suppress duplicate posts."""
    content = "|".join(str(p) for p in parts)
    return hashlib.sha256(content.encode("utf-8", errors="ignore")).hexdigest()


def alert_hash(record: Dict[str, Any]) -> str:
    properties = record.get("properties") or {}
    identity = record.get("id") or properties.get("id")
    if identity:
        return content_hash("alert", identity)
    return content_hash("alert", properties.get("headline"), properties.get("sent"), properties.get("areaDesc"))
