"""
Tactical analysis engine.

Summarizes a region's current snapshot, asks an OpenAI-compatible
chat-completions endpoint for a threat assessment, and turns the reply into
a TacticalAnalysis. Replies are parsed in two phases: locate the first
balanced JSON object in the text (models like to wrap it in prose or code
fences), then decode it strictly. Anything that fails either phase is kept
as a degraded UNKNOWN record carrying the raw text.
"""

import json
import logging
import threading
from typing import Callable, Dict, Optional

import requests

from contracts.constants import (
    ANALYSIS_TIMEOUT_SECONDS,
    ANALYSIS_INITIAL_DELAY_SECONDS,
)
from contracts.validation import (
    Region,
    Snapshot,
    TacticalAnalysis,
    utc_now_iso,
    validate_tactical_analysis,
)
from backend.cache import AnalysisCache, SnapshotCache
from backend.config import Settings
from backend.metrics import ANALYSIS_RUNS
from backend.poller import BackgroundLoop

logger = logging.getLogger(__name__)

AnalysisCallback = Callable[[str, TacticalAnalysis], None]

# Thresholds for the "interesting subset" sent to the model
HIGH_ALTITUDE_M = 12000
LOW_ALTITUDE_M = 1000
FAST_VELOCITY_MPS = 250
EMERGENCY_SQUAWKS = ("7500", "7600", "7700")
MAX_SAMPLE_AIRCRAFT = 15

SYSTEM_PROMPT = """You are SENTINEL, a tactical air-picture analyst. You receive a summary of live \
aircraft tracking data for one region and return a threat assessment.

Threat levels: CRITICAL (immediate threat), HIGH (likely hostile or coordinated military activity), \
MEDIUM (unidentified or unusual activity needing attention), LOW (routine military/government \
activity), NOMINAL (normal civilian traffic). Emergency squawks 7500/7600/7700 are always flagged.

Respond with ONLY valid JSON in exactly this structure:
{
  "overall_threat_level": "CRITICAL|HIGH|MEDIUM|LOW|NOMINAL",
  "threat_score": 0-100,
  "summary": "1-2 sentence situation summary",
  "key_observations": [
    {"type": "FORMATION|INTERCEPT|ANOMALY|PATROL|VIOLATION|TRANSIT",
     "description": "...", "aircraft_involved": ["CALLSIGN"], "threat_contribution": "HIGH|MEDIUM|LOW"}
  ],
  "aircraft_of_interest": [
    {"callsign": "...", "icao24": "...", "threat_level": "CRITICAL|HIGH|MEDIUM|LOW|NOMINAL",
     "reason": "...", "recommended_action": "TRACK|MONITOR|INTERCEPT|IGNORE"}
  ],
  "tactical_recommendations": [{"priority": 1, "action": "...", "rationale": "..."}],
  "pattern_analysis": {"formations_detected": 0, "unusual_behaviors": 0, "potential_threats": 0,
                       "commercial_density": "LOW|NORMAL|HIGH"},
  "next_update_priority": "IMMEDIATE|HIGH|NORMAL|LOW"
}"""


# ============================================
# Errors
# ============================================

class AnalysisError(Exception):
    """Analysis could not be produced; the cached analysis is unchanged."""


class AnalysisUnavailableError(AnalysisError):
    """No reasoning-service credential is configured."""


class NoDataError(AnalysisError):
    """The region has no aircraft cached yet."""


class ReasoningServiceError(AnalysisError):
    """The reasoning service call failed."""


# ============================================
# Prompt construction
# ============================================

def _sample(ac) -> dict:
    return {
        "icao24": ac.icao24,
        "callsign": ac.callsign or "UNKNOWN",
        "origin": ac.origin_country,
        "alt": round(ac.baro_altitude) if ac.baro_altitude is not None else None,
        "speed": round(ac.velocity) if ac.velocity is not None else None,
        "heading": round(ac.true_track) if ac.true_track is not None else None,
        "vrate": round(ac.vertical_rate) if ac.vertical_rate is not None else None,
        "squawk": ac.squawk,
        "lat": round(ac.latitude, 3),
        "lon": round(ac.longitude, 3),
    }


def summarize_snapshot(snapshot: Snapshot) -> dict:
    """
    Reduce a snapshot to counts plus a bounded sample of notable aircraft.

    Sample order: emergency squawks, missing callsigns, low, fast, then a
    couple of ordinary airborne aircraft for context.
    """
    aircraft = snapshot.aircraft
    airborne = [ac for ac in aircraft if not ac.on_ground]
    no_callsign = [ac for ac in aircraft if not ac.callsign]
    emergency = [ac for ac in aircraft if ac.squawk in EMERGENCY_SQUAWKS]
    high_alt = [ac for ac in airborne if ac.baro_altitude is not None and ac.baro_altitude > HIGH_ALTITUDE_M]
    low_alt = [
        ac for ac in airborne
        if ac.baro_altitude is not None and 0 < ac.baro_altitude < LOW_ALTITUDE_M
    ]
    fast = [ac for ac in airborne if ac.velocity is not None and ac.velocity > FAST_VELOCITY_MPS]

    sample = []
    seen = set()
    for group in (emergency, no_callsign[:5], low_alt[:3], fast[:5], airborne[:2]):
        for ac in group:
            if ac.icao24 in seen:
                continue
            seen.add(ac.icao24)
            sample.append(_sample(ac))

    return {
        "total": len(aircraft),
        "airborne": len(airborne),
        "ground": len(aircraft) - len(airborne),
        "no_callsign": len(no_callsign),
        "emergency_squawks": len(emergency),
        "high_altitude": len(high_alt),
        "low_altitude": len(low_alt),
        "fast": len(fast),
        "sample": sample[:MAX_SAMPLE_AIRCRAFT],
    }


def build_user_prompt(region: Region, snapshot: Snapshot) -> str:
    summary = summarize_snapshot(snapshot)
    return f"""TACTICAL ANALYSIS REQUEST - {region.name.upper()}

Time: {utc_now_iso()}
Region: Lat {region.min_lat}-{region.max_lat}, Lon {region.min_lon}-{region.max_lon}

SUMMARY:
- Total: {summary['total']} aircraft ({summary['airborne']} airborne, {summary['ground']} ground)
- No callsign: {summary['no_callsign']}
- Emergency squawks: {summary['emergency_squawks']}
- High altitude (>{HIGH_ALTITUDE_M}m): {summary['high_altitude']}
- Low altitude (<{LOW_ALTITUDE_M}m): {summary['low_altitude']}
- Fast (>{FAST_VELOCITY_MPS}m/s): {summary['fast']}

AIRCRAFT OF INTEREST (sample):
{json.dumps(summary['sample'], indent=1)}

Analyze and respond with ONLY JSON."""


# ============================================
# Reply parsing
# ============================================

def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} block in text, or None.

    Braces inside double-quoted strings (including escaped quotes) do not
    count toward the nesting depth.
    """
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    return None


def parse_analysis(content: str, region: str) -> TacticalAnalysis:
    """Decode a reasoning-service reply, degrading instead of raising."""
    candidate = extract_json_object(content)
    if candidate is None:
        logger.warning(f"[{region}] No JSON object in analysis reply")
        return TacticalAnalysis.degraded(region, content)

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.warning(f"[{region}] Analysis reply is not valid JSON: {e}")
        return TacticalAnalysis.degraded(region, content)

    if not isinstance(data, dict):
        return TacticalAnalysis.degraded(region, content)

    # Stamped by us, whatever the model put there
    for key in ("timestamp", "region", "raw"):
        data.pop(key, None)

    is_valid, analysis, error = validate_tactical_analysis(data)
    if not is_valid:
        logger.warning(f"[{region}] Analysis reply does not match schema: {error}")
        return TacticalAnalysis.degraded(region, content)

    return analysis.model_copy(update={"timestamp": utc_now_iso(), "region": region})


# ============================================
# Reasoning service client
# ============================================

class ReasoningClient:
    """Minimal OpenAI-compatible chat-completions client."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        session: Optional[requests.Session] = None,
        timeout: float = ANALYSIS_TIMEOUT_SECONDS,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> Optional["ReasoningClient"]:
        if not settings.ai_enabled:
            return None
        return cls(settings.openai_api_url, settings.openai_api_key, settings.openai_model, session=session)

    def complete(self, system: str, user: str) -> str:
        """
        Send one chat completion and return the first choice's content.

        Raises:
            ReasoningServiceError: transport failure, non-2xx, error body or no choices
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            response = self.session.post(
                f"{self.api_url}/chat/completions",
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ReasoningServiceError(f"API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not 200 <= response.status_code < 300:
            message = None
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message")
            raise ReasoningServiceError(
                f"API returned {response.status_code}: {message or response.text[:200]}"
            )

        if not isinstance(data, dict):
            raise ReasoningServiceError("parse response: body is not a JSON object")

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise ReasoningServiceError(f"service error: {message}")

        choices = data.get("choices") or []
        if not choices:
            raise ReasoningServiceError("no response choices")

        message = choices[0].get("message") or {}
        return message.get("content") or ""


# ============================================
# Engine
# ============================================

class AnalysisEngine:
    """Runs analyses on demand and from the per-region schedulers."""

    def __init__(
        self,
        regions: Dict[str, Region],
        snapshot_cache: SnapshotCache,
        analysis_cache: AnalysisCache,
        client: Optional[ReasoningClient] = None,
        on_analysis: Optional[AnalysisCallback] = None,
    ):
        self.regions = regions
        self.snapshot_cache = snapshot_cache
        self.analysis_cache = analysis_cache
        self.client = client
        self.on_analysis = on_analysis

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def analyze(self, region_id: str) -> TacticalAnalysis:
        """
        Produce, cache and publish a fresh analysis for a region.

        Raises:
            AnalysisUnavailableError: no reasoning-service credential
            NoDataError: region unknown or nothing cached for it yet
            ReasoningServiceError: the service call failed
        """
        if self.client is None:
            raise AnalysisUnavailableError("OPENAI_API_KEY not configured")

        region = self.regions.get(region_id)
        if region is None or not self.snapshot_cache.has_aircraft(region_id):
            raise NoDataError("No aircraft data available")
        snapshot = self.snapshot_cache.get(region_id)

        logger.info(f"[{region_id}] Requesting tactical analysis ({snapshot.count} aircraft)")
        try:
            content = self.client.complete(SYSTEM_PROMPT, build_user_prompt(region, snapshot))
        except ReasoningServiceError:
            ANALYSIS_RUNS.labels(region=region_id, outcome="error").inc()
            raise

        analysis = parse_analysis(content, region_id)
        self.analysis_cache.update(analysis)

        outcome = "degraded" if analysis.is_degraded else "success"
        ANALYSIS_RUNS.labels(region=region_id, outcome=outcome).inc()
        logger.info(
            f"[{region_id}] AI Analysis complete: {analysis.overall_threat_level} "
            f"(Score: {analysis.threat_score})"
        )

        if self.on_analysis is not None:
            try:
                self.on_analysis(region_id, analysis)
            except Exception as e:
                logger.error(f"[{region_id}] Analysis broadcast failed: {e}", exc_info=True)

        return analysis


class AnalysisScheduler(BackgroundLoop):
    """Periodic analysis for one region, skipped while nobody is watching it."""

    def __init__(
        self,
        region_id: str,
        engine: AnalysisEngine,
        subscriber_count: Callable[[str], int],
        interval: float = 60,
        initial_delay: float = ANALYSIS_INITIAL_DELAY_SECONDS,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(interval, initial_delay, stop_event)
        self.region_id = region_id
        self.engine = engine
        self.subscriber_count = subscriber_count
        self.name = f"analysis-{region_id}"

    def run_once(self) -> Optional[TacticalAnalysis]:
        if self.subscriber_count(self.region_id) == 0:
            logger.debug(f"[{self.region_id}] No subscribers, skipping scheduled analysis")
            ANALYSIS_RUNS.labels(region=self.region_id, outcome="skipped").inc()
            return None

        try:
            return self.engine.analyze(self.region_id)
        except NoDataError:
            logger.info(f"[{self.region_id}] No aircraft data for analysis")
        except AnalysisError as e:
            logger.error(f"[{self.region_id}] AI analysis error: {e}")
        return None

    def tick(self) -> None:
        self.run_once()


class AnalysisSchedulerGroup:
    """One AnalysisScheduler per region, staggered so calls do not coincide."""

    def __init__(
        self,
        region_ids,
        engine: AnalysisEngine,
        subscriber_count: Callable[[str], int],
        interval: float = 60,
    ):
        self._stop = threading.Event()
        region_ids = list(region_ids)
        step = interval / max(len(region_ids), 1)
        self.schedulers = [
            AnalysisScheduler(
                region_id,
                engine,
                subscriber_count,
                interval=interval,
                initial_delay=ANALYSIS_INITIAL_DELAY_SECONDS + index * step,
                stop_event=self._stop,
            )
            for index, region_id in enumerate(region_ids)
        ]

    def start(self):
        if not self.schedulers or not self.schedulers[0].engine.enabled:
            logger.warning("OPENAI_API_KEY not set, scheduled analysis disabled")
            return
        for scheduler in self.schedulers:
            scheduler.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        for scheduler in self.schedulers:
            scheduler.stop(timeout=timeout)
