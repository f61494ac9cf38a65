# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
# ]
# ///
"""Lighthouse Batch Runner CLI Tool.

Runs Lighthouse audits over a list of pages, repeats every audit several
times to smooth out measurement noise, reduces the repeated samples per
category (and optionally per Web Vitals metric) with a median or average,
and writes one CSV summary row per page.
"""

from __future__ import annotations

import argparse
import json
import math
import os
import signal
import subprocess
import sys
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, NoReturn

import pandas as pd
import requests

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_CATEGORIES = ("performance", "pwa", "best-practices", "accessibility", "seo")
VALID_SCORE_METHODS = ("median", "average")
VALID_ENGINES = ("local", "psi")
VALID_STRATEGIES = ("mobile", "desktop")

# "pwa" is still accepted for older Lighthouse releases but is not a default,
# since Lighthouse 12 no longer reports it.
DEFAULT_CATEGORIES = ["performance", "best-practices", "accessibility", "seo"]
DEFAULT_RUNS = 3
DEFAULT_SCORE_METHOD = "median"
DEFAULT_ENGINE = "local"
DEFAULT_STRATEGY = "mobile"
DEFAULT_INPUT_FILE = "input.csv"
DEFAULT_OUTPUT_FILE = "output.csv"
DEFAULT_ERROR_LOG = "error-log.txt"
DEFAULT_CHROME_FLAGS = ["headless"]
DEFAULT_LIGHTHOUSE_PATH = "lighthouse"

# Headings for the page metadata that precedes the scores in every row.
# For example: Name,Page type,URL,Performance,Accessibility,SEO
DEFAULT_METADATA_HEADINGS = "Name,Page type,URL"

# Leading input fields that are metadata; everything after them is the URL.
METADATA_FIELD_COUNT = 2

# Lighthouse audit ids collected when Web Vitals output is requested.
DEFAULT_VITALS_METRICS = [
    "server-response-time",
    "first-contentful-paint",
    "largest-contentful-paint",
    "speed-index",
    "max-potential-fid",
    "interactive",
    "total-blocking-time",
    "cumulative-layout-shift",
]

PSI_REQUEST_TIMEOUT = 120
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

CONFIG_FILENAMES = ["lighthouse-batch.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-batch",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AuditError(Exception):
    """Raised when an audit engine cannot produce a Lighthouse result for a URL."""


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_config(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "input": "input",
        "output": "output",
        "error_log": "error_log",
        "append": "append",
        "categories": "categories",
        "runs": "runs",
        "score_method": "score_method",
        "vitals": "vitals",
        "audits": "audits",
        "metadata": "metadata",
        "chrome_flags": "chrome_flags",
        "metrics": "metrics",
        "engine": "engine",
        "strategy": "strategy",
        "api_key": "api_key",
        "lighthouse_path": "lighthouse_path",
        "timeout": "timeout",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


@dataclass
class RunSettings:
    """Validated settings for one batch; built once before any audit starts."""

    input_file: str = DEFAULT_INPUT_FILE
    output_file: str = DEFAULT_OUTPUT_FILE
    error_log: str | None = DEFAULT_ERROR_LOG
    categories: list[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    runs: int = DEFAULT_RUNS
    score_method: str = DEFAULT_SCORE_METHOD
    append: bool = False
    include_vitals: bool = False
    include_audits: bool = False
    metadata_headings: str = DEFAULT_METADATA_HEADINGS
    chrome_flags: list[str] = field(default_factory=lambda: [f"--{flag}" for flag in DEFAULT_CHROME_FLAGS])
    metrics: list[str] = field(default_factory=lambda: list(DEFAULT_VITALS_METRICS))
    engine: str = DEFAULT_ENGINE
    strategy: str = DEFAULT_STRATEGY
    api_key: str | None = None
    lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH
    timeout: float | None = None
    verbose: bool = False


def _config_error(message: str) -> NoReturn:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _split_list(value: str | Iterable[str] | None) -> list[str]:
    """Accept either a TOML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def resolve_settings(args: argparse.Namespace) -> RunSettings:
    """Validate merged CLI/config values. Any invalid value is fatal."""
    categories = _split_list(getattr(args, "categories", None))
    invalid_categories = [cat for cat in categories if cat not in VALID_CATEGORIES]
    if not categories or invalid_categories:
        _config_error(
            "--categories must be one or more comma-separated values of "
            f"{','.join(VALID_CATEGORIES)}: {getattr(args, 'categories', None)} is not valid"
        )

    raw_runs = getattr(args, "runs", DEFAULT_RUNS)
    # TOML may hand over floats or booleans; only ints and CLI strings count
    if isinstance(raw_runs, bool) or not isinstance(raw_runs, (int, str)):
        _config_error(f"--runs must be an integer: {raw_runs} is not valid")
    try:
        runs = int(raw_runs)
    except (TypeError, ValueError):
        _config_error(f"--runs must be an integer: {raw_runs} is not valid")
    if runs < 1:
        _config_error("--runs must be at least 1")

    score_method = getattr(args, "score_method", DEFAULT_SCORE_METHOD)
    if score_method not in VALID_SCORE_METHODS:
        _config_error(f"--score-method must be average or median: {score_method} is not valid")

    engine = getattr(args, "engine", DEFAULT_ENGINE)
    if engine not in VALID_ENGINES:
        _config_error(f"--engine must be one of {', '.join(VALID_ENGINES)}: {engine} is not valid")

    strategy = getattr(args, "strategy", DEFAULT_STRATEGY)
    if strategy not in VALID_STRATEGIES:
        _config_error(f"--strategy must be mobile or desktop: {strategy} is not valid")

    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            _config_error(f"--timeout must be a number of seconds: {timeout} is not valid")
        if timeout <= 0:
            _config_error("--timeout must be greater than 0")

    # Chrome flags are given without dashes, e.g. "headless,disable-gpu"
    chrome_flags = [
        flag if flag.startswith("-") else f"--{flag}"
        for flag in _split_list(getattr(args, "chrome_flags", DEFAULT_CHROME_FLAGS))
    ]

    metrics = _split_list(getattr(args, "metrics", None)) or list(DEFAULT_VITALS_METRICS)

    return RunSettings(
        input_file=getattr(args, "input", DEFAULT_INPUT_FILE),
        output_file=getattr(args, "output", DEFAULT_OUTPUT_FILE),
        error_log=getattr(args, "error_log", DEFAULT_ERROR_LOG),
        categories=categories,
        runs=runs,
        score_method=score_method,
        append=bool(getattr(args, "append", False)),
        include_vitals=bool(getattr(args, "vitals", False)),
        include_audits=bool(getattr(args, "audits", False)),
        metadata_headings=getattr(args, "metadata", DEFAULT_METADATA_HEADINGS),
        chrome_flags=chrome_flags,
        metrics=metrics,
        engine=engine,
        strategy=strategy,
        api_key=getattr(args, "api_key", None),
        lighthouse_path=getattr(args, "lighthouse_path", DEFAULT_LIGHTHOUSE_PATH),
        timeout=timeout,
        verbose=bool(getattr(args, "verbose", False)),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-batch",
        description="Run repeated Lighthouse audits for a list of pages and write a CSV summary",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-C", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-a", "--append", dest="append", action=TrackingStoreTrueAction, default=False, help="Append output to existing data in output file")
    parser.add_argument("-c", "--categories", dest="categories", action=TrackingAction, default=",".join(DEFAULT_CATEGORIES), help=f"Categories to audit, comma-separated (default: {','.join(DEFAULT_CATEGORIES)})")
    parser.add_argument("-f", "--flags", dest="chrome_flags", action=TrackingAction, default=",".join(DEFAULT_CHROME_FLAGS), help="One or more comma-separated Chrome flags *without* dashes (default: headless)")
    parser.add_argument("-i", "--input", dest="input", action=TrackingAction, default=DEFAULT_INPUT_FILE, help=f"Input file (default: {DEFAULT_INPUT_FILE})")
    parser.add_argument("-m", "--metadata", dest="metadata", action=TrackingAction, default=DEFAULT_METADATA_HEADINGS, help=f"Headings for page metadata (default: {DEFAULT_METADATA_HEADINGS})")
    parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=DEFAULT_OUTPUT_FILE, help=f"Output file (default: {DEFAULT_OUTPUT_FILE})")
    parser.add_argument("-t", "--audits", dest="audits", action=TrackingStoreTrueAction, default=False, help="Include individual audit scores in output")
    parser.add_argument("-n", "--vitals", dest="vitals", action=TrackingStoreTrueAction, default=False, help="Include Web Vitals metrics in output")
    parser.add_argument("-r", "--runs", dest="runs", action=TrackingAction, default=DEFAULT_RUNS, help=f"Number of times each URL is audited (default: {DEFAULT_RUNS})")
    parser.add_argument("-s", "--score-method", dest="score_method", action=TrackingAction, default=DEFAULT_SCORE_METHOD, help="Aggregation method: median or average (default: median)")
    parser.add_argument("-e", "--engine", dest="engine", action=TrackingAction, default=DEFAULT_ENGINE, help="Audit engine: local (lighthouse CLI) or psi (PageSpeed Insights API)")
    parser.add_argument("--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, help="PageSpeed Insights strategy: mobile or desktop")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key for the psi engine (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("--lighthouse-path", dest="lighthouse_path", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_PATH, help="Path to the lighthouse CLI for the local engine")
    parser.add_argument("--timeout", dest="timeout", action=TrackingAction, default=None, help="Seconds before a single audit is abandoned (default: no limit)")
    parser.add_argument("--error-log", dest="error_log", action=TrackingAction, default=DEFAULT_ERROR_LOG, help=f"Error log file (default: {DEFAULT_ERROR_LOG})")
    parser.add_argument("--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Print every recorded sample to stderr")
    parser.set_defaults(metrics=None)
    return parser


# ---------------------------------------------------------------------------
# Input Handling
# ---------------------------------------------------------------------------


def get_url(page: str, metadata_field_count: int = METADATA_FIELD_COUNT) -> str:
    """Return the URL part of an input row. URLs may contain commas."""
    page_parts = page.split(",")
    return ",".join(page_parts[metadata_field_count:]).strip()


def load_pages(file_path: str) -> list[str]:
    """Read input rows, e.g. ``John Lewis,homepage,https://johnlewis.com``."""
    path = Path(file_path)
    if not path.is_file():
        print(f"Error: input file not found: {file_path}", file=sys.stderr)
        sys.exit(1)

    pages: list[str] = []
    for line in path.read_text(encoding="utf-8").strip().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if not get_url(line):
            print(f"Warning: skipping row without URL: {line}", file=sys.stderr)
            continue
        pages.append(line)

    if not pages:
        print(f"Error: no pages found in {file_path}", file=sys.stderr)
        sys.exit(1)

    return pages


# ---------------------------------------------------------------------------
# Error Log
# ---------------------------------------------------------------------------


class ErrorLog:
    """Numbered error log shared by the console and the error log file.

    ``count`` is the number of failed or discarded observations so far and
    only ever increases.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self.count = 0

    def reset(self) -> None:
        """Truncate the log file, if there is one."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")

    def record(self, message: str) -> None:
        self.count += 1
        print(f"Error: {message}", file=sys.stderr)
        if self.path is not None:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(f"Error {self.count}: {message}\n\n")


# ---------------------------------------------------------------------------
# Audit Engines
# ---------------------------------------------------------------------------


def build_lighthouse_command(url: str, settings: RunSettings) -> list[str]:
    """Build the lighthouse CLI invocation for one audit."""
    return [
        settings.lighthouse_path,
        url,
        "--output=json",
        "--output-path=stdout",
        "--quiet",
        f"--chrome-flags={' '.join(settings.chrome_flags)}",
        f"--only-categories={','.join(settings.categories)}",
    ]


def _kill_process_group(process: subprocess.Popen) -> None:
    """Kill lighthouse and every Chrome it launched, then reap the child."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        # group already exited
        pass
    process.communicate()


def run_local_lighthouse(url: str, settings: RunSettings) -> dict:
    """Audit a URL with the local lighthouse CLI and return its result (LHR).

    The CLI launches Chrome, runs the audit and kills Chrome before it exits,
    so every call owns exactly one browser session.
    """
    command = build_lighthouse_command(url, settings)
    try:
        # Own process group, so a timeout can take Chrome down with lighthouse
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise AuditError(f"lighthouse CLI not found: {settings.lighthouse_path}") from exc
    except OSError as exc:
        raise AuditError(f"cannot start lighthouse CLI {settings.lighthouse_path}: {exc}") from exc

    try:
        stdout, stderr = process.communicate(timeout=settings.timeout)
    except subprocess.TimeoutExpired as exc:
        _kill_process_group(process)
        raise AuditError(f"Lighthouse timed out after {settings.timeout}s for {url}") from exc

    if process.returncode != 0:
        detail = (stderr or "").strip()[-500:] or f"exit status {process.returncode}"
        raise AuditError(f"Lighthouse failed for {url}: {detail}")

    try:
        result = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise AuditError(f"Invalid Lighthouse JSON for {url}: {exc}") from exc
    if not isinstance(result, dict):
        raise AuditError(f"Unexpected Lighthouse output for {url}")
    return result


def _parse_retry_after(value: str | None) -> float | None:
    """Seconds from a numeric Retry-After header; None for the HTTP-date form."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def fetch_pagespeed_result(url: str, settings: RunSettings) -> dict:
    """Audit a URL through the PageSpeed Insights API and return its LHR.

    Retries on 429/500/503 with exponential backoff.
    """
    # requests supports list values for repeated query params
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": settings.strategy,
        "category": settings.categories,
    }
    if settings.api_key:
        params["key"] = settings.api_key
    timeout = settings.timeout or PSI_REQUEST_TIMEOUT

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.get(
                PAGESPEED_API_URL,
                params=params,
                timeout=timeout,
            )

            if response.status_code == 200:
                lighthouse = response.json().get("lighthouseResult")
                if not isinstance(lighthouse, dict):
                    raise AuditError(f"No lighthouseResult in PageSpeed response for {url}")
                return lighthouse

            if response.status_code in RETRYABLE_STATUS_CODES:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None and response.status_code == 429:
                    wait_time = retry_after
                else:
                    wait_time = RETRY_BASE_DELAY * (2**attempt)
                last_error = AuditError(f"HTTP {response.status_code} for {url}")
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                    continue

            # Non-retryable error
            error_detail = ""
            try:
                error_body = response.json()
                error_detail = error_body.get("error", {}).get("message", response.text[:200])
            except (ValueError, KeyError, AttributeError):
                error_detail = response.text[:200]
            raise AuditError(f"HTTP {response.status_code} for {url}: {error_detail}")

        except requests.RequestException as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue

    raise AuditError(f"Failed after {MAX_RETRIES + 1} attempts for {url}: {last_error}")


AUDIT_ENGINES: dict[str, Callable[[str, RunSettings], dict]] = {
    "local": run_local_lighthouse,
    "psi": fetch_pagespeed_result,
}


def run_audit(url: str, settings: RunSettings) -> dict:
    """Run one audit with the configured engine."""
    return AUDIT_ENGINES[settings.engine](url, settings)


# ---------------------------------------------------------------------------
# Result Extraction
# ---------------------------------------------------------------------------


def extract_category_scores(lhr: dict) -> dict[str, float | None]:
    """Map category title to its raw 0-1 score, in result order."""
    scores: dict[str, float | None] = {}
    for cat_key, cat_data in (lhr.get("categories") or {}).items():
        title = cat_data.get("title") or cat_key
        scores[title] = cat_data.get("score")
    return scores


def extract_metric_values(lhr: dict, metric_ids: Iterable[str]) -> dict[str, float | None]:
    audits = lhr.get("audits") or {}
    return {metric_id: (audits.get(metric_id) or {}).get("numericValue") for metric_id in metric_ids}


def extract_audit_scores(lhr: dict) -> dict[str, tuple[str, float | None]]:
    """Map audit id to (title, score) for every audit in the result."""
    audit_scores: dict[str, tuple[str, float | None]] = {}
    for audit_key, audit_data in (lhr.get("audits") or {}).items():
        audit_id = audit_data.get("id", audit_key)
        audit_scores[audit_id] = (audit_data.get("title", audit_id), audit_data.get("score"))
    return audit_scores


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives (2.5 -> 3)."""
    return math.floor(value + 0.5)


def median(values: Iterable[float]) -> float:
    """Median of the values; 0 for an empty sequence. Even counts are not rounded."""
    series = pd.Series(list(values), dtype=float)
    if series.empty:
        return 0
    return float(series.median())


def average(values: Iterable[float]) -> int:
    """Mean of the values rounded to the nearest integer."""
    series = pd.Series(list(values), dtype=float)
    if series.empty:
        raise ValueError("average() of an empty sequence")
    return round_half_up(series.mean())


REDUCERS: dict[str, Callable[[Iterable[float]], float]] = {
    "median": median,
    "average": average,
}


def reduce_samples(values: Iterable[float], score_method: str) -> float:
    return REDUCERS[score_method](values)


# ---------------------------------------------------------------------------
# Sample Accumulator
# ---------------------------------------------------------------------------


@dataclass
class PageSamples:
    """Samples gathered for one input page across runs."""

    metadata: str
    scores: dict[str, list[int]] | None = None
    metrics: dict[str, list[float]] | None = None
    # Latest score per audit id; overwritten every run, never reduced.
    audits: dict[str, float | None] | None = None

    def has_samples(self) -> bool:
        return bool(self.scores) and any(self.scores.values())


class SampleAccumulator:
    """Per-page sample sequences, keyed by the page's position in the input."""

    def __init__(self, error_log: ErrorLog, verbose: bool = False):
        self.error_log = error_log
        self.verbose = verbose
        self.audit_titles: dict[str, str] = {}
        self._pages: dict[int, PageSamples] = {}

    def record(
        self,
        page_index: int,
        page: str,
        url: str,
        category_scores: dict[str, float | None],
        metric_values: dict[str, float | None] | None = None,
        audit_scores: dict[str, tuple[str, float | None]] | None = None,
    ) -> PageSamples:
        """Add one successful audit's values to the page's samples.

        Zero category scores and zero or missing metric values are discarded
        and logged. Each key is judged independently.
        """
        samples = self._pages.get(page_index)
        if samples is None:
            samples = PageSamples(metadata=page)
            self._pages[page_index] = samples

        if samples.scores is None:
            samples.scores = {}
        for title, raw_score in category_scores.items():
            sequence = samples.scores.setdefault(title, [])
            # A null category score counts as zero
            score = round_half_up((raw_score or 0) * 100)
            if score == 0:
                self.error_log.record(f"Zero {title} score for {url}. This data will be discarded.")
                continue
            if self.verbose:
                print(f"{url}: {title} {score}", file=sys.stderr)
            sequence.append(score)

        if metric_values is not None:
            if samples.metrics is None:
                samples.metrics = {}
            for metric_id, value in metric_values.items():
                sequence = samples.metrics.setdefault(metric_id, [])
                if value is None:
                    self.error_log.record(f"Missing {metric_id} value for {url}. This data will be discarded.")
                    continue
                if value == 0:
                    self.error_log.record(f"Zero {metric_id} value for {url}. This data will be discarded.")
                    continue
                if self.verbose:
                    print(f"{url}: {metric_id} {value}", file=sys.stderr)
                sequence.append(value)

        if audit_scores is not None:
            if samples.audits is None:
                samples.audits = {}
            if not self.audit_titles:
                self.audit_titles = {audit_id: title for audit_id, (title, _) in audit_scores.items()}
            for audit_id, (_, score) in audit_scores.items():
                samples.audits[audit_id] = score

        return samples

    def get_all(self) -> list[PageSamples]:
        """Pages with at least one successful audit, in input order."""
        return [self._pages[page_index] for page_index in sorted(self._pages)]


# ---------------------------------------------------------------------------
# Run Loop
# ---------------------------------------------------------------------------


def run_audits(
    pages: list[str],
    settings: RunSettings,
    accumulator: SampleAccumulator,
    error_log: ErrorLog,
    audit_fn: Callable[[str, RunSettings], dict] = run_audit,
) -> int:
    """Audit every page once per run, strictly one at a time.

    Failed cells are logged and skipped, never retried. Returns the number
    of audits attempted, which is always ``settings.runs * len(pages)``.
    """
    attempted = 0
    for run_index in range(settings.runs):
        if run_index > 0:
            print(f"\nStart run {run_index + 1}", file=sys.stderr)
        for page_index, page in enumerate(pages):
            print(
                f"\nRun {run_index + 1} of {settings.runs}: URL {page_index + 1} of {len(pages)}",
                file=sys.stderr,
            )
            url = get_url(page)
            attempted += 1
            try:
                results = audit_fn(url, settings)
            except Exception as exc:
                # Any failed invocation costs only this cell
                detail = exc if isinstance(exc, AuditError) else f"{type(exc).__name__}: {exc}"
                error_log.record(f"Caught error for {url}:\n{detail}")
                continue

            runtime_error = results.get("runtimeError")
            if runtime_error:
                message = runtime_error.get("message", "") if isinstance(runtime_error, dict) else runtime_error
                error_log.record(f"Lighthouse runtime error for {url}.\n\n{message}\n")
                continue

            accumulator.record(
                page_index,
                page,
                url,
                extract_category_scores(results),
                metric_values=extract_metric_values(results, settings.metrics) if settings.include_vitals else None,
                audit_scores=extract_audit_scores(results) if settings.include_audits else None,
            )

    return attempted


# ---------------------------------------------------------------------------
# Output Formats
# ---------------------------------------------------------------------------


@dataclass
class SummaryColumns:
    """Column keys of the summary, in output order."""

    categories: list[str]
    metrics: list[str] = field(default_factory=list)
    audits: list[str] = field(default_factory=list)


def observed_pages(accumulator: SampleAccumulator) -> list[PageSamples]:
    """Pages that kept at least one category sample; the rest are skipped."""
    pages: list[PageSamples] = []
    for samples in accumulator.get_all():
        if samples.has_samples():
            pages.append(samples)
        else:
            print(f"Warning: no valid scores for {samples.metadata}, row omitted", file=sys.stderr)
    return pages


def derive_columns(first_page: PageSamples, include_vitals: bool, include_audits: bool) -> SummaryColumns:
    """Take the output columns from the first observed page.

    Later pages are assumed to report the same keys.
    """
    return SummaryColumns(
        categories=list(first_page.scores or {}),
        metrics=list(first_page.metrics or {}) if include_vitals else [],
        audits=list(first_page.audits or {}) if include_audits else [],
    )


def _reduced(sequences: dict[str, list] | None, key: str, score_method: str) -> float | None:
    values = (sequences or {}).get(key)
    if not values:
        return None
    return reduce_samples(values, score_method)


def build_summary_frame(pages: list[PageSamples], columns: SummaryColumns, score_method: str) -> pd.DataFrame:
    """One row per page: metadata, reduced scores and metrics, latest audit scores."""
    frame_columns = (
        ["metadata"]
        + [f"score:{title}" for title in columns.categories]
        + [f"metric:{metric_id}" for metric_id in columns.metrics]
        + [f"audit:{audit_id}" for audit_id in columns.audits]
    )
    rows = []
    for samples in pages:
        row: dict[str, object] = {"metadata": samples.metadata}
        for title in columns.categories:
            row[f"score:{title}"] = _reduced(samples.scores, title, score_method)
        for metric_id in columns.metrics:
            row[f"metric:{metric_id}"] = _reduced(samples.metrics, metric_id, score_method)
        for audit_id in columns.audits:
            row[f"audit:{audit_id}"] = (samples.audits or {}).get(audit_id)
        rows.append(row)
    return pd.DataFrame(rows, columns=frame_columns, dtype=object)


def build_header(metadata_headings: str, columns: SummaryColumns, audit_titles: dict[str, str]) -> str:
    labels = [metadata_headings, *columns.categories, *columns.metrics]
    labels.extend(audit_titles.get(audit_id, audit_id) for audit_id in columns.audits)
    return ",".join(labels)


def format_value(value: object) -> str:
    """Render a cell: integral floats without a fraction, missing values empty."""
    if value is None:
        return ""
    if isinstance(value, float):
        value = float(value)
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def format_csv(frame: pd.DataFrame, header: str) -> str:
    lines = [header]
    for row in frame.itertuples(index=False, name=None):
        lines.append(",".join(format_value(value) for value in row))
    return "\n".join(lines) + "\n"


def format_output(accumulator: SampleAccumulator, settings: RunSettings) -> tuple[pd.DataFrame, str]:
    """Reduce all samples and render the CSV text. Empty frame and text if nothing was observed."""
    pages = observed_pages(accumulator)
    if not pages:
        return pd.DataFrame(), ""
    columns = derive_columns(pages[0], settings.include_vitals, settings.include_audits)
    frame = build_summary_frame(pages, columns, settings.score_method)
    header = build_header(settings.metadata_headings, columns, accumulator.audit_titles)
    return frame, format_csv(frame, header)


def prepare_sinks(settings: RunSettings, error_log: ErrorLog) -> None:
    """Clear old output (unless appending) and old error data before auditing."""
    if not settings.append:
        output_path = Path(settings.output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text("", encoding="utf-8")
    error_log.reset()


def write_output(output_file: str, text: str) -> str:
    """Append CSV text to the output file. Returns the file path."""
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "a", encoding="utf-8") as fh:
        fh.write(text)
    return str(output_path)


def print_run_summary(settings: RunSettings, page_count: int, error_count: int, frame: pd.DataFrame) -> None:
    """Print run totals and first-category score stats to stderr."""
    print(
        f"\nCompleted {settings.runs} run(s) for {page_count} URL(s) with {error_count} error(s).",
        file=sys.stderr,
    )
    score_columns = [col for col in frame.columns if str(col).startswith("score:")]
    if score_columns:
        first_column = score_columns[0]
        scores = pd.to_numeric(frame[first_column], errors="coerce").dropna()
        if len(scores) > 0:
            label = first_column.split(":", 1)[1]
            print(f"\nSummary ({label}, {settings.score_method}):", file=sys.stderr)
            print(f"  URLs in output: {len(frame)}", file=sys.stderr)
            print(f"  Avg score:      {scores.mean():.0f}", file=sys.stderr)
            print(f"  Min score:      {scores.min():.0f}", file=sys.stderr)
            print(f"  Max score:      {scores.max():.0f}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def run_batch(settings: RunSettings, audit_fn: Callable[[str, RunSettings], dict] = run_audit) -> int:
    """Audit all input pages, write the CSV summary and return an exit code."""
    pages = load_pages(settings.input_file)
    error_log = ErrorLog(settings.error_log)
    prepare_sinks(settings, error_log)

    print(
        f"Auditing {len(pages)} URL(s) x {settings.runs} run(s) "
        f"({settings.engine} engine, {settings.score_method} scoring)",
        file=sys.stderr,
    )
    accumulator = SampleAccumulator(error_log, verbose=settings.verbose)
    run_audits(pages, settings, accumulator, error_log, audit_fn=audit_fn)

    frame, text = format_output(accumulator, settings)
    print_run_summary(settings, len(pages), error_log.count, frame)
    if frame.empty:
        print("Warning: no page was audited successfully, output not written", file=sys.stderr)
        return 1

    output_path = write_output(settings.output_file, text)
    print(f"\nView output: {output_path}", file=sys.stderr)
    if error_log.path is not None and error_log.count:
        print(f"View errors: {error_log.path}", file=sys.stderr)
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_config(args, config, profile_name)
    settings = resolve_settings(args)

    if settings.categories != DEFAULT_CATEGORIES:
        print(f"Auditing categories: {','.join(settings.categories)}", file=sys.stderr)

    exit_code = run_batch(settings)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
