import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.engine import Engine

from ..config import IngestSettings
from ..db import (
    DataStoreUnavailableError,
    complete_job,
    create_job,
    fail_job,
    get_today_quota_used,
    load_due_keywords,
    persist_keyword_results,
)
from .ingestion_providers import YOUTUBE_QUOTA_PER_SEARCH, IngestionProvider, ProviderError, is_quota_error

logger = logging.getLogger(__name__)

NO_KEYWORDS_MESSAGE = "No keywords due for ingestion"


def _public_message(error: BaseException) -> str:
    if isinstance(error, ProviderError):
        return str(error)
    return type(error).__name__


def _detail_message(error: BaseException) -> str:
    if isinstance(error, ProviderError):
        return error.detail()
    return f"{type(error).__name__}: {error}"


@dataclass
class RunState:
    """Mutable per-run bookkeeping. `use_secondary_only` only ever flips False -> True."""

    use_secondary_only: bool = False
    stopped_for_quota: bool = False
    stopped_for_time: bool = False
    keywords_processed: int = 0
    videos_ingested: int = 0
    quota_units_used: int = 0
    provider_per_keyword: list[dict[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    # Same entries as `errors` plus upstream bodies and driver messages; job metadata only
    error_details: list[str] = field(default_factory=list)

    def latch_secondary(self) -> None:
        self.use_secondary_only = True

    def record_provider(self, keyword: str, provider_name: str) -> None:
        self.provider_per_keyword.append({"keyword": keyword, "provider": provider_name})

    def record_error(self, public: str, detail: str | None = None) -> None:
        self.errors.append(public)
        self.error_details.append(detail or public)

    def metadata(self, daily_quota_limit: int) -> dict[str, Any]:
        return {
            "keywords_processed": self.keywords_processed,
            "videos_ingested": self.videos_ingested,
            "quota_units_used": self.quota_units_used,
            "daily_quota_limit": daily_quota_limit,
            "stopped_for_quota": self.stopped_for_quota,
            "stopped_for_time": self.stopped_for_time,
            "provider_per_keyword": list(self.provider_per_keyword),
            "errors": list(self.errors),
            "error_details": list(self.error_details),
        }


def _ingest_keyword(engine: Engine, keyword: dict[str, Any], provider: IngestionProvider, state: RunState) -> None:
    result = provider.search_and_enrich(keyword["keyword"])
    written = persist_keyword_results(engine, keyword["id"], result.videos)
    state.videos_ingested += written
    # Charged on empty searches too
    state.quota_units_used += result.quota_units_used
    state.record_provider(keyword["keyword"], provider.name)
    logger.info(
        f"Ingested keyword {keyword['keyword']!r} via {provider.name}: "
        f"{written} videos, {result.quota_units_used} units"
    )


def _process_keyword(
    engine: Engine,
    keyword: dict[str, Any],
    primary: IngestionProvider,
    secondary: IngestionProvider | None,
    state: RunState,
) -> None:
    text = keyword["keyword"]
    provider = secondary if state.use_secondary_only and secondary is not None else primary
    on_primary = provider is primary
    state.keywords_processed += 1

    try:
        _ingest_keyword(engine, keyword, provider, state)
        return
    except DataStoreUnavailableError:
        raise
    except Exception as e:
        error = e

    if on_primary and secondary is not None and is_quota_error(error):
        state.latch_secondary()
        logger.warning(f"Primary provider quota error on {text!r}, switching to {secondary.name} for the rest of the run")
        try:
            _ingest_keyword(engine, keyword, secondary, state)
        except DataStoreUnavailableError:
            raise
        except Exception as fallback_error:
            logger.warning(f"Fallback provider failed for {text!r}: {_detail_message(fallback_error)}")
            state.record_error(
                f'keyword "{text}": YouTube {_public_message(error)}; '
                f"scraper fallback failed: {_public_message(fallback_error)}",
                f'keyword "{text}": YouTube {_detail_message(error)}; '
                f"scraper fallback failed: {_detail_message(fallback_error)}",
            )
            state.quota_units_used += YOUTUBE_QUOTA_PER_SEARCH
            state.record_provider(text, primary.name)
        return

    logger.warning(f"Keyword {text!r} failed on {provider.name}: {_detail_message(error)}")
    state.record_error(f'keyword "{text}": {_public_message(error)}', f'keyword "{text}": {_detail_message(error)}')
    if on_primary:
        state.quota_units_used += YOUTUBE_QUOTA_PER_SEARCH
    state.record_provider(text, provider.name)


def _summary(job_id: int, state: RunState) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "ok": True,
        "job_id": job_id,
        "keywords_processed": state.keywords_processed,
        "videos_ingested": state.videos_ingested,
        "quota_units_used": state.quota_units_used,
        "stopped_for_quota": state.stopped_for_quota,
        "stopped_for_time": state.stopped_for_time,
        "provider_per_keyword": list(state.provider_per_keyword),
    }
    if state.errors:
        summary["errors"] = list(state.errors)
    return summary


def run_ingestion_job(
    engine: Engine,
    primary: IngestionProvider,
    secondary: IngestionProvider | None,
    settings: IngestSettings,
    trigger: str | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """
    One ingestion pass: due keywords are processed sequentially against a shared daily quota.

    - Before each keyword, today's completed usage plus this run's usage is checked
      against the daily limit. Near the limit the run latches onto the secondary
      provider, or halts when there is none.
    - A primary quota error also latches onto the secondary and retries that keyword.
    - Keyword-level failures are collected, only DataStoreUnavailableError aborts the run.
    - The job row ends `completed`, or `failed` when an exception escapes.
    """
    trigger = trigger or settings.trigger
    job_id = create_job(engine, trigger)
    state = RunState()
    limit = settings.daily_quota_limit
    logger.info(f"Ingestion job {job_id} started (trigger={trigger})")

    try:
        keywords = load_due_keywords(engine, settings.keywords_limit)
        if not keywords:
            complete_job(engine, job_id, 0, {**state.metadata(limit), "message": NO_KEYWORDS_MESSAGE})
            logger.info(f"Ingestion job {job_id}: no keywords due")
            return {**_summary(job_id, state), "message": NO_KEYWORDS_MESSAGE}

        started = monotonic()
        for keyword in keywords:
            if monotonic() - started >= settings.time_budget_seconds:
                state.stopped_for_time = True
                logger.warning(f"Ingestion job {job_id} stopped: time budget of {settings.time_budget_seconds}s spent")
                break

            if not state.use_secondary_only:
                used = get_today_quota_used(engine) + state.quota_units_used
                if used + YOUTUBE_QUOTA_PER_SEARCH > limit:
                    state.stopped_for_quota = True
                    if secondary is not None:
                        state.latch_secondary()
                        logger.warning(f"Ingestion job {job_id}: quota near limit ({used}/{limit}), using {secondary.name}")
                    else:
                        state.record_error(
                            f'keyword "{keyword["keyword"]}": skipped, daily quota limit near '
                            f"(used {used}, limit {limit}); no secondary provider configured"
                        )
                        logger.warning(f"Ingestion job {job_id} halted: quota near limit ({used}/{limit})")
                        break

            _process_keyword(engine, keyword, primary, secondary, state)

        complete_job(engine, job_id, state.quota_units_used, state.metadata(limit))
        logger.info(
            f"Ingestion job {job_id} completed: {state.keywords_processed} keywords, "
            f"{state.videos_ingested} videos, {state.quota_units_used} units"
        )
        return _summary(job_id, state)
    except Exception as e:
        logger.exception(f"Ingestion job {job_id} failed")
        try:
            fail_job(engine, job_id, state.quota_units_used, str(e) or type(e).__name__, state.metadata(limit))
        except Exception:
            logger.exception(f"Could not mark ingestion job {job_id} as failed")
        raise
