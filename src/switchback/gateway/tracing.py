"""Request tracing for the gateway.

Provides human-readable trace IDs, request/response log lines and optional
per-request debug files.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Debug file names, in pipeline order
CLIENT_REQUEST_FILE = "1_anthropic_request.json"
UPSTREAM_REQUEST_FILE = "2_openai_request.json"
CLIENT_RESPONSE_FILE = "3_anthropic_response.json"


def _words(text: str) -> str:
    words = text.split()[:3]
    return "_".join(w[:8] for w in words if w and not w.startswith("<"))[:20]


class RequestTracer:
    """Handles request tracing and debug data saving.

    Debug files are saved to: {debug_dir}/logs/{session_id}/{trace_id}/

    Example:
        tracer = RequestTracer(debug_dir="/tmp/switchback-debug")
        trace_id = tracer.generate_trace_id(body)
        tracer.save_debug(trace_id, CLIENT_REQUEST_FILE, body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self._request_counter = 0
        self._session_id: str | None = None
        self._debug_dir_config = debug_dir

    @property
    def debug_dir(self) -> Path | None:
        """Session debug directory, or None when debug saving is off."""
        if not self._debug_dir_config:
            return None

        if self._session_id is None:
            self._session_id = time.strftime("%Y-%m-%d_%H-%M-%S")

        return Path(self._debug_dir_config) / "logs" / self._session_id

    def generate_trace_id(self, body: dict[str, Any]) -> str:
        """Generate a human-readable trace ID with sequence number and context.

        Format: {counter}_{hhmmss}_{num_messages}msgs_{context}
        Example: 00001_031333_1msgs_Please_write_a
        """
        self._request_counter += 1
        timestamp = time.strftime("%H%M%S")

        msgs = body.get("messages") or []
        msg_count = len(msgs)

        # Last user message with real text; tool_result-only turns are skipped
        context = ""
        for m in reversed(msgs):
            if not isinstance(m, dict) or m.get("role") != "user":
                continue
            content = m.get("content", "")
            if isinstance(content, str) and content.strip():
                context = _words(content)
            elif isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "text":
                        text = block.get("text") or ""
                        if text.strip():
                            context = _words(text)
                            break
            if context:
                break

        context = "".join(c if c.isalnum() or c == "_" else "" for c in context) or "request"
        return f"{self._request_counter:05d}_{timestamp}_{msg_count}msgs_{context}"

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Save debug data to a JSON file if debug_dir is configured."""
        if not self.debug_dir:
            return

        try:
            trace_path = self.debug_dir / trace_id
            trace_path.mkdir(parents=True, exist_ok=True)

            filepath = trace_path / filename
            with open(filepath, "w") as f:
                json.dump(data, f, indent=2, default=str, ensure_ascii=False)
            logger.debug("[%s] Saved debug file: %s", trace_id, filepath)
        except OSError as e:
            logger.warning("[%s] Failed to save debug file %s: %s", trace_id, filename, e)

    def log_request(self, trace_id: str, method: str, path: str, body_size: int, msg_count: int = 0) -> None:
        logger.debug(
            "[%s] request_start: method=%s, path=%s, body_size=%d, msg_count=%d",
            trace_id,
            method,
            path,
            body_size,
            msg_count,
        )

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        error: str | None = None,
    ) -> None:
        """Log the outcome of a request.

        Args:
            trace_id: Trace ID for this request.
            status_code: HTTP status code sent to the client.
            duration_s: Request duration in seconds.
            tokens_in: Input tokens.
            tokens_out: Output tokens.
            error: Error message if the request failed.
        """
        if error:
            logger.warning(
                "[%s] request_failed: status=%d, error=%s (%.2fs)",
                trace_id,
                status_code,
                error[:100],
                duration_s,
            )
        else:
            logger.info(
                "[%s] request_complete: status=%d, tokens_in=%d, tokens_out=%d (%.2fs)",
                trace_id,
                status_code,
                tokens_in,
                tokens_out,
                duration_s,
            )
