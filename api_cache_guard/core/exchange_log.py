"""
LLM exchange log.

Append-only record of prompts sent to the chat model and the responses or
errors that came back, one directory per itinerary. Kept for audit and
debugging; nothing here is ever read back as a cache hit.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import yaml

from ..config.cache_config import resolve_cache_base_dir

CHATGPT_DIR = "chatgpt"
REQUEST_PREFIX = "request_"
RESPONSE_PREFIX = "response_"
CONVERSATION_PREFIX = "conversation_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with milliseconds, e.g. 2026-10-17T12:30:45.123Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def timestamp_to_filename(prefix: str, timestamp: str, extension: str = "json") -> str:
    """File name for a record, with ':' and '.' of the timestamp replaced by '-'."""
    safe = timestamp.replace(":", "-").replace(".", "-")
    return f"{prefix}{safe}.{extension}"


def format_text_for_yaml(text: str) -> str:
    """Turn escaped newlines and tabs back into real ones for readability."""
    return text.replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")


class _LiteralDumper(yaml.SafeDumper):
    """Dumps multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, value: str):
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_LiteralDumper.add_representer(str, _represent_str)


@dataclass
class ExchangeStats:
    """Record counts for one itinerary."""
    request_count: int = 0
    response_count: int = 0
    conversation_count: int = 0
    total_files: int = 0
    files: List[str] = field(default_factory=list)


@dataclass
class AllExchangeStats:
    """Record counts across every itinerary."""
    total_trips: int = 0
    total_requests: int = 0
    total_responses: int = 0
    total_conversations: int = 0
    total_files: int = 0
    trip_stats: Dict[str, ExchangeStats] = field(default_factory=dict)


@dataclass
class CleanupResult:
    """Outcome of a retention sweep."""
    deleted_files: int = 0
    errors: List[str] = field(default_factory=list)


class ExchangeLog:
    """Writes request/response records under ``<base>/chatgpt/<itinerary_id>/``."""

    def __init__(
        self,
        base_dir: Optional[Union[str, Path]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        base = Path(base_dir) if base_dir is not None else resolve_cache_base_dir()
        self.root = base / CHATGPT_DIR
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock or _utc_now

    def save_chatgpt_request(
        self,
        itinerary_id: str,
        messages: Sequence[Mapping[str, Any]],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> str:
        """Write the outbound prompt before the call is made.

        Args:
            itinerary_id: Trip the request belongs to
            messages: Chat messages sent to the model
            model: Model name
            max_tokens: Token ceiling sent with the request
            temperature: Sampling temperature sent with the request

        Returns:
            The request timestamp, used to correlate the response record.
            Returned even if the write failed.
        """
        moment = self._clock()
        timestamp = format_timestamp(moment)
        try:
            directory = self._trip_dir(itinerary_id)
            directory.mkdir(parents=True, exist_ok=True)
            # Bump by a millisecond until the name is free so two requests never share a record
            while True:
                record: Dict[str, Any] = {
                    "itineraryId": itinerary_id,
                    "model": model,
                    "messages": [dict(message) for message in messages],
                    "timestamp": timestamp,
                }
                if max_tokens is not None:
                    record["maxTokens"] = max_tokens
                if temperature is not None:
                    record["temperature"] = temperature
                try:
                    self._write_new(directory / timestamp_to_filename(REQUEST_PREFIX, timestamp), record)
                    break
                except FileExistsError:
                    moment += timedelta(milliseconds=1)
                    timestamp = format_timestamp(moment)
            self.log.info("ChatGPT request logged for %s at %s", itinerary_id, timestamp)
        except (OSError, TypeError, ValueError):
            self.log.warning("Error saving ChatGPT request for %s", itinerary_id, exc_info=True)
        return timestamp

    def save_chatgpt_response(
        self,
        itinerary_id: str,
        request_timestamp: str,
        response: Any,
        error: Optional[Union[str, BaseException]] = None
    ) -> None:
        """Write the outcome of a call, correlated to its request.

        Args:
            itinerary_id: Trip the request belongs to
            request_timestamp: Value returned by save_chatgpt_request
            response: Response payload; a mapping's "usage" entry is copied alongside,
                other payloads (plain text, a list of choices) are stored as given
            error: Error message or exception when the call failed
        """
        try:
            record: Dict[str, Any] = {
                "itineraryId": itinerary_id,
                "requestTimestamp": request_timestamp,
                "responseTimestamp": format_timestamp(self._clock()),
            }
            if error is not None:
                record["response"] = None
                record["error"] = str(error)
            elif isinstance(response, Mapping):
                record["response"] = dict(response)
                if response.get("usage") is not None:
                    record["usage"] = response["usage"]
            else:
                # Plain text or a list of choices is stored as given
                record["response"] = response
            directory = self._trip_dir(itinerary_id)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / timestamp_to_filename(RESPONSE_PREFIX, request_timestamp)
            path.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")
            self.log.info("ChatGPT response logged for %s at %s", itinerary_id, request_timestamp)
        except (OSError, TypeError, ValueError):
            self.log.warning("Error saving ChatGPT response for %s", itinerary_id, exc_info=True)

    def save_chatgpt_conversation(
        self,
        itinerary_id: str,
        prompt: str,
        response: str,
        error: Optional[str] = None
    ) -> None:
        """Write prompt and response together as a readable YAML document.

        Args:
            itinerary_id: Trip the conversation belongs to
            prompt: Prompt text
            response: Response text (ignored when error is given)
            error: Error message when the call failed
        """
        timestamp = format_timestamp(self._clock())
        document: Dict[str, Any] = {
            "itineraryId": itinerary_id,
            "timestamp": timestamp,
            "prompt": format_text_for_yaml(prompt),
            "response": "" if error else format_text_for_yaml(response),
        }
        if error:
            document["error"] = error
        try:
            directory = self._trip_dir(itinerary_id)
            directory.mkdir(parents=True, exist_ok=True)
            content = yaml.dump(
                document,
                Dumper=_LiteralDumper,
                sort_keys=False,
                allow_unicode=True,
                width=float("inf")
            )
            path = directory / timestamp_to_filename(CONVERSATION_PREFIX, timestamp, "yaml")
            path.write_text(content, encoding="utf-8")
            self.log.info("ChatGPT conversation logged: %s", path.name)
        except (OSError, ValueError, yaml.YAMLError):
            self.log.warning("Error saving ChatGPT conversation for %s", itinerary_id, exc_info=True)

    def get_chatgpt_cache_stats(self, itinerary_id: str) -> ExchangeStats:
        """Count the records of one itinerary by kind.

        Raises:
            ValueError: If the itinerary id is empty or contains a path separator
        """
        try:
            files = sorted(p.name for p in self._trip_dir(itinerary_id).iterdir() if p.is_file())
        except FileNotFoundError:
            return ExchangeStats()
        except OSError:
            self.log.warning("Error reading ChatGPT log for %s", itinerary_id, exc_info=True)
            return ExchangeStats()
        return ExchangeStats(
            request_count=sum(1 for f in files if f.startswith(REQUEST_PREFIX)),
            response_count=sum(1 for f in files if f.startswith(RESPONSE_PREFIX)),
            conversation_count=sum(1 for f in files if f.startswith(CONVERSATION_PREFIX)),
            total_files=len(files),
            files=files
        )

    def get_all_chatgpt_cache_stats(self) -> AllExchangeStats:
        """Count records for every itinerary."""
        stats = AllExchangeStats()
        try:
            trip_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
        except FileNotFoundError:
            return stats
        except OSError:
            self.log.warning("Error reading ChatGPT log directory", exc_info=True)
            return stats

        for trip_dir in trip_dirs:
            trip = self.get_chatgpt_cache_stats(trip_dir.name)
            stats.total_trips += 1
            stats.total_requests += trip.request_count
            stats.total_responses += trip.response_count
            stats.total_conversations += trip.conversation_count
            stats.total_files += trip.total_files
            stats.trip_stats[trip_dir.name] = trip
        return stats

    def cleanup_old_chatgpt_cache(
        self,
        older_than_days: int = 30,
        itinerary_id: Optional[str] = None
    ) -> CleanupResult:
        """Delete records whose modification time is older than the cutoff.

        Without an itinerary id every itinerary directory is swept. Failures
        are collected per file instead of aborting the sweep. An invalid
        itinerary id is reported the same way.

        Args:
            older_than_days: Age in days beyond which records are removed
            itinerary_id: Restrict the sweep to one itinerary

        Returns:
            CleanupResult with the deleted count and error messages
        """
        result = CleanupResult()
        cutoff = time.time() - older_than_days * 86400
        if itinerary_id is None:
            base = self.root
        else:
            try:
                base = self._trip_dir(itinerary_id)
            except ValueError as e:
                result.errors.append(str(e))
                return result
        if not base.exists():
            return result
        self._sweep(base, cutoff, recurse=itinerary_id is None, result=result)
        return result

    def _sweep(self, directory: Path, cutoff: float, recurse: bool, result: CleanupResult) -> None:
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            result.errors.append(f"Failed to read directory {directory}: {e}")
            return

        for path in entries:
            try:
                if path.is_dir():
                    if recurse:
                        self._sweep(path, cutoff, recurse, result)
                    continue
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except OSError as e:
                result.errors.append(f"Failed to delete {path.name}: {e}")
                continue
            result.deleted_files += 1
            self.log.info("Deleted old ChatGPT log file: %s", path.name)

    def _trip_dir(self, itinerary_id: str) -> Path:
        if not itinerary_id or itinerary_id in (".", "..") or "/" in itinerary_id or "\\" in itinerary_id:
            raise ValueError(f"Invalid itinerary id: {itinerary_id!r}")
        return self.root / itinerary_id

    @staticmethod
    def _write_new(path: Path, record: Mapping[str, Any]) -> None:
        content = json.dumps(record, indent=2, default=str)
        with path.open("x", encoding="utf-8") as fp:
            fp.write(content)
