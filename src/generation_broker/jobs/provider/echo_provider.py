"""Local deterministic provider for demos and smoke runs."""

from __future__ import annotations

from typing import Any
from uuid import uuid4


class EchoGenerationProvider:
    """Return a fake track built from the request payload without network I/O."""

    def generate(self, payload: dict[str, Any], *, timeout_seconds: int) -> dict[str, Any]:
        task_id = f"echo-{uuid4().hex[:12]}"
        prompt = str(payload.get("prompt", "")).strip()
        return {
            "taskId": task_id,
            "songs": [
                {
                    "id": f"{task_id}-0",
                    "title": payload.get("title") or prompt[:40] or "Untitled",
                    "audio_url": f"echo://{task_id}/0.mp3",
                    "duration": int(payload.get("duration", 0) or 0),
                    "model_name": "echo",
                },
            ],
            "timeout_seconds": timeout_seconds,
        }
