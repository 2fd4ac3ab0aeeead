"""
LLM Debug Logger for tracking every provider call made by the gateway.

Supports configurable log levels (NONE, INFO, DEBUG, TRACE) and dual output:
- Console: Human-readable formatted output
- File: JSON Lines format for parsing and analysis
"""

import json
import os
import re
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


DATA_URL_PATTERN = re.compile(r"data:image/([\w.+-]+);base64,([A-Za-z0-9+/=]+)")


class LogLevel(Enum):
    """Logging levels for LLM debug output."""

    NONE = 0
    INFO = 1
    DEBUG = 2
    TRACE = 3


class LLMLogger:
    """Centralized logger for LLM API calls with configurable levels."""

    _instance: Optional["LLMLogger"] = None

    def __new__(cls):
        """Singleton pattern implementation."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize the logger with configuration from environment."""
        if self._initialized:
            return

        load_dotenv()

        level_str = os.getenv("LLM_DEBUG_LEVEL", "NONE").upper()
        try:
            self.level = LogLevel[level_str]
        except KeyError:
            self.level = LogLevel.NONE

        self.log_to_file = os.getenv("LLM_LOG_TO_FILE", "true").lower() == "true"
        self.log_dir = Path(os.getenv("LLM_LOG_DIR", "outputs"))

        self._initialized = True

    def _should_log(self, min_level: LogLevel) -> bool:
        """Check if we should log at the given level."""
        return self.level.value >= min_level.value

    def _format_timestamp(self) -> str:
        """Get ISO8601 formatted timestamp."""
        return datetime.now().isoformat()

    def _truncate_content(self, content: str, max_len: int = 200) -> str:
        """Truncate content for preview."""
        if len(content) <= max_len:
            return content
        return content[:max_len] + "... [truncated]"

    def describe_image(self, media_type: Optional[str], data: Optional[str]) -> Optional[str]:
        """Summarize an image payload instead of logging its bytes."""
        if not data:
            return None
        image_type = (media_type or "image/png").split("/")[-1]
        return f"[IMAGE_DATA: {image_type}, base64 encoded, {len(data):,} bytes]"

    def strip_images(self, text: str) -> str:
        """Replace inline data URLs in text with size placeholders."""
        return DATA_URL_PATTERN.sub(
            lambda m: f"[IMAGE_DATA: {m.group(1)}, base64 encoded, {len(m.group(2)):,} bytes]",
            text,
        )

    def _write_to_file(self, session_id: Optional[str], log_entry: Dict[str, Any]):
        """Write log entry to JSON Lines file."""
        if not self.log_to_file or not session_id:
            return

        log_file = self.log_dir / session_id / "logs" / "llm_calls.jsonl"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")

    def log_invocation(
        self,
        component: str,
        provider: str,
        model: str,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Log the start of an LLM invocation.

        Returns:
            Invocation ID (UUID string) for tracking this call, empty when disabled
        """
        if not self._should_log(LogLevel.INFO):
            return ""

        invocation_id = str(uuid.uuid4())
        console_msg = f"[{self._format_timestamp()}] 🔵 LLM Call: [{component}] {provider}/{model}"
        if session_id:
            console_msg += f" | session: {session_id}"
        print(console_msg)
        return invocation_id

    def log_request(
        self,
        invocation_id: str,
        component: str,
        provider: str,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        image_summary: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Log the prompt sent to the provider."""
        if not self._should_log(LogLevel.DEBUG):
            return

        prompt_text = self.strip_images(prompt)
        lines = [f"  Prompt: {self._truncate_content(prompt_text, 150)}"]
        if system:
            lines.append(f"  System: {self._truncate_content(system, 100)}")
        if image_summary:
            lines.append(f"  Image: {image_summary}")
        print("\n".join(lines))

        log_entry = {
            "timestamp": self._format_timestamp(),
            "level": self.level.name,
            "component": component,
            "invocation_id": invocation_id,
            "provider": provider,
            "model": model,
            "session_id": session_id,
            "request": {
                "prompt": prompt_text if self.level == LogLevel.TRACE else None,
                "prompt_length": len(prompt),
                "system": system if self.level == LogLevel.TRACE else None,
                "image": image_summary,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            "metadata": metadata or {},
        }
        self._write_to_file(session_id, log_entry)

    def log_response(
        self,
        invocation_id: str,
        component: str,
        provider: str,
        model: str,
        text: str,
        start_time: float,
        end_time: float,
        usage: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Log provider response with timing and token usage."""
        if not self._should_log(LogLevel.INFO):
            return

        latency_ms = (end_time - start_time) * 1000
        total_tokens = (usage or {}).get("total_tokens")

        parts = [f"[{component}]", f"{provider}/{model}", f"{latency_ms:.1f}ms"]
        if total_tokens is not None:
            parts.append(f"{total_tokens} tokens")
        print(f"[{self._format_timestamp()}] ✅ LLM Response: " + " | ".join(parts))

        if self.level == LogLevel.DEBUG:
            print(f"  Response: {self._truncate_content(text, 200)}")
        elif self.level == LogLevel.TRACE:
            body = text if len(text) <= 1000 else text[:1000] + f"...\n    ... [{len(text) - 1000} more chars]"
            print("  RESPONSE:\n    " + body.replace("\n", "\n    "))
            if usage:
                print("  TOKEN USAGE:")
                for key, value in usage.items():
                    print(f"    {key}: {value}")

        log_entry = {
            "timestamp": self._format_timestamp(),
            "level": self.level.name,
            "component": component,
            "invocation_id": invocation_id,
            "provider": provider,
            "model": model,
            "session_id": session_id,
            "response": {
                "content": text if self.level == LogLevel.TRACE else None,
                "content_preview": (
                    self._truncate_content(text, 200)
                    if self.level.value >= LogLevel.DEBUG.value
                    else None
                ),
                "content_length": len(text),
            },
            "timing": {
                "latency_ms": latency_ms,
                "start_time": datetime.fromtimestamp(start_time).isoformat(),
                "end_time": datetime.fromtimestamp(end_time).isoformat(),
            },
            "usage": usage or None,
            "metadata": metadata or {},
        }
        self._write_to_file(session_id, log_entry)

    def log_error(
        self,
        invocation_id: str,
        component: str,
        provider: str,
        model: str,
        error: Exception,
        session_id: Optional[str] = None,
    ):
        """Log a failed provider call."""
        if not self._should_log(LogLevel.INFO):
            return

        print(f"[{self._format_timestamp()}] ❌ LLM Error: [{component}] {type(error).__name__}: {error}")
        self._write_to_file(session_id, {
            "timestamp": self._format_timestamp(),
            "level": self.level.name,
            "component": component,
            "invocation_id": invocation_id,
            "provider": provider,
            "model": model,
            "session_id": session_id,
            "error": {"type": type(error).__name__, "message": str(error)},
        })


def get_logger() -> LLMLogger:
    """Get the singleton logger instance."""
    return LLMLogger()
