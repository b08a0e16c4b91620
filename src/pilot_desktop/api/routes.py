from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from pilot_core.config import PreviewConfig
from pilot_core.sandbox import check_preview_access, resolve_request_path
from pilot_desktop.preview import clamp_max_lines, read_file_preview


def register_routes(
    app: FastAPI,
    *,
    preview_config: PreviewConfig,
    home_dir: str,
    logger: logging.Logger,
) -> None:
    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.get("/api/files/preview")
    def api_files_preview(
        path: str | None = Query(default=None),
        base_dir: str | None = Query(default=None, alias="baseDir"),
        max_lines: str | None = Query(default=None, alias="maxLines"),
    ) -> dict[str, Any]:
        if not path:
            raise HTTPException(status_code=400, detail="Missing path parameter")

        resolved_path = resolve_request_path(path)
        resolved_base = resolve_request_path(base_dir) if base_dir else None
        # Raises SandboxViolationError before anything touches the disk.
        check_preview_access(
            resolved_path,
            resolved_base,
            home=home_dir,
            require_base=preview_config.require_base_dir,
        )

        line_limit = clamp_max_lines(
            max_lines,
            default=preview_config.default_max_lines,
            cap=preview_config.max_lines_cap,
        )
        try:
            preview = read_file_preview(resolved_path, line_limit)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except OSError as exc:
            logger.warning(
                "Failed to read file preview: %s",
                exc,
                extra={"component": "preview", "operation": "read", "result": "failed", "error_class": type(exc).__name__},
            )
            raise HTTPException(status_code=500, detail=f"Failed to read file: {exc}") from exc
        return {"preview": preview.as_payload()}
