#!/usr/bin/env python3
# RATP next-train proxy: scrapes the WAP schedule page and serves it as JSON.

from dataclasses import dataclass
import json
import logging
import os
import re
from string import Template
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dotenv import load_dotenv
from flask import Flask, request, Response
import requests

load_dotenv()

log = logging.getLogger("ratp_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


DELEGATE_URL_TEMPLATE = (
    "http://wap.ratp.fr/siv/schedule?service=next"
    "&reseau=${mode}&lineid=${line}&directionsens=${direction}&stationname=${station}"
)
SCHEDULE_RESULT_PATTERN = (
    r'&gt;&nbsp;([^<]+)</div>.*>(\w+)</a>.*<div class="schmsg."><b>([^<]+)</b>'
)
TRANSIT_MODE = "rer"
MANDATORY_PARAMETERS = ("line", "direction", "station")

RATP_TIMEOUT_SEC = env_float("RATP_TIMEOUT_SEC", 5.0)
RATP_USER_AGENT = os.getenv("RATP_USER_AGENT", "ratp-proxy/1.0")

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)


@dataclass(frozen=True)
class ProxyConfig:
    url_template: Template
    result_pattern: "re.Pattern[str]"
    mode: str
    timeout_sec: float
    user_agent: str


@dataclass(frozen=True)
class ScheduleQuery:
    mode: str
    line: str
    direction: str
    station: str


@dataclass(frozen=True)
class ArrivalEntry:
    destination: str
    mission: str
    stop: str


@dataclass(frozen=True)
class ScheduleResult:
    delegate_duration_s: float
    incoming_trains: List[ArrivalEntry]


class ScheduleError(Exception):
    stage = "Failed to handle request"


class MissingParameter(ScheduleError):
    stage = "Failed to build delegate URL"

    def __init__(self, name: str):
        super().__init__(f"Missing mandatory parameter '{name}'")
        self.name = name


class InternalTemplateError(ScheduleError):
    stage = "Failed to build delegate URL"


class UpstreamFetchError(ScheduleError):
    stage = "Failed to query RATP service"


class ExtractionError(ScheduleError):
    stage = "Failed to parse output of RATP service"


class EncodingError(ScheduleError):
    stage = "Failed to encode result to JSON"


@dataclass(frozen=True)
class PipelineResult:
    body: Optional[bytes] = None
    error: Optional[ScheduleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def load_config(
    url_template: str = DELEGATE_URL_TEMPLATE,
    result_pattern: str = SCHEDULE_RESULT_PATTERN,
) -> ProxyConfig:
    """Compile the URL template and extraction pattern.

    Called once at import; a template that cannot render every placeholder
    raises here instead of on the first request.
    """
    template = Template(url_template)
    template.substitute(mode="", line="", direction="", station="")
    return ProxyConfig(
        url_template=template,
        result_pattern=re.compile(result_pattern, re.ASCII),
        mode=TRANSIT_MODE,
        timeout_sec=RATP_TIMEOUT_SEC,
        user_agent=RATP_USER_AGENT,
    )


CONFIG = load_config()

app = Flask(__name__)
session = requests.Session()


def build_schedule_query(params: Mapping[str, Sequence[str]], config: ProxyConfig) -> ScheduleQuery:
    values: Dict[str, str] = {}
    for name in MANDATORY_PARAMETERS:
        supplied = params.get(name)
        if not supplied or not supplied[0]:
            raise MissingParameter(name)
        values[name] = supplied[0]
    return ScheduleQuery(mode=config.mode, **values)


def compose_delegate_url(query: ScheduleQuery, config: ProxyConfig) -> str:
    try:
        return config.url_template.substitute(
            mode=query.mode,
            line=query.line,
            direction=query.direction,
            station=query.station,
        )
    except (KeyError, ValueError) as exc:
        raise InternalTemplateError(f"template evaluation failed: {exc}") from exc


def response_charset(content_type: str) -> str:
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip().strip('"')
    return "utf-8"


def fetch_schedule_page(url: str, config: ProxyConfig) -> str:
    try:
        with session.get(
            url,
            timeout=config.timeout_sec,
            headers={"User-Agent": config.user_agent},
        ) as resp:
            content = resp.content
            charset = response_charset(resp.headers.get("Content-Type", ""))
    except requests.RequestException as exc:
        raise UpstreamFetchError(str(exc)) from exc

    # Non-200 pages are handed to the extractor like any other body.
    try:
        return content.decode(charset)
    except (LookupError, UnicodeDecodeError) as exc:
        raise UpstreamFetchError(f"cannot decode response body as {charset}: {exc}") from exc


def extract_arrivals(body: str, config: ProxyConfig) -> List[ArrivalEntry]:
    """Return one entry per match, in document order.

    An empty list covers both "no train scheduled" and a page the pattern no
    longer recognises; the two cannot be told apart here.
    """
    try:
        matches = config.result_pattern.finditer(body)
        return [
            ArrivalEntry(destination=m.group(1), mission=m.group(2), stop=m.group(3))
            for m in matches
        ]
    except TypeError as exc:
        raise ExtractionError(str(exc)) from exc


def result_payload(result: ScheduleResult) -> Dict[str, Any]:
    return {
        "duration_s": result.delegate_duration_s,
        "incoming_trains": [
            {"destination": t.destination, "mission": t.mission, "stop": t.stop}
            for t in result.incoming_trains
        ],
    }


def encode_result(result: ScheduleResult, pretty: bool) -> bytes:
    payload = result_payload(result)
    try:
        if pretty:
            text = json.dumps(payload, indent=2, ensure_ascii=False)
        else:
            text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise EncodingError(str(exc)) from exc
    return text.encode("utf-8")


def run_schedule_pipeline(
    params: Mapping[str, Sequence[str]],
    pretty: bool,
    config: Optional[ProxyConfig] = None,
) -> PipelineResult:
    config = config or CONFIG
    try:
        query = build_schedule_query(params, config)
        url = compose_delegate_url(query, config)

        started = time.monotonic()
        body = fetch_schedule_page(url, config)
        duration = time.monotonic() - started
        log.debug("RATP fetch took %.3fs: %s", duration, url)

        trains = extract_arrivals(body, config)
        encoded = encode_result(
            ScheduleResult(delegate_duration_s=duration, incoming_trains=trains),
            pretty,
        )
    except ScheduleError as exc:
        return PipelineResult(error=exc)
    return PipelineResult(body=encoded)


def error_message(exc: ScheduleError) -> str:
    return f"{exc.stage}: {exc}"


def error_response(exc: ScheduleError) -> Response:
    message = error_message(exc)
    log.error(message)
    return Response(message + "\n", status=500, content_type="text/plain; charset=utf-8")


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    return resp


@app.route("/", methods=["GET"])
def next_trains() -> Response:
    outcome = run_schedule_pipeline(
        request.args.to_dict(flat=False),
        pretty="pretty" in request.args,
    )
    if outcome.error is not None:
        return error_response(outcome.error)

    resp = Response(outcome.body, status=200, content_type="application/json")
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
