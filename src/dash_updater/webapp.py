import argparse
import logging
import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from dash_updater.service import (
    EXIT_CONFIG,
    EXIT_ENV,
    POST_ACTIONS,
    Reconciler,
    _settings_from_config,
    _setup_logging,
)

DEFAULT_STATIC_DIR = Path(__file__).parent / "web" / "static"


def _mount_path(prefix: str) -> str:
    return "/" + prefix.strip("/")


def create_app(
    reconciler: Reconciler,
    static_dir: Path = DEFAULT_STATIC_DIR,
    static_prefix: str = "/",
) -> FastAPI:
    app = FastAPI()
    name = reconciler.settings.service_name

    @app.api_route("/update", methods=["GET", "POST"], response_class=PlainTextResponse)
    def update() -> PlainTextResponse:
        logging.info("[%s] update requested", name)
        outcome = reconciler.force_update()
        if not outcome.ok:
            logging.error("[%s] update failed: %s", name, outcome.error)
            return PlainTextResponse(outcome.output, status_code=500)
        logging.info("[%s] updated repository", name)
        return PlainTextResponse(outcome.output)

    @app.get("/healthz")
    def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.mount(
        _mount_path(static_prefix),
        StaticFiles(directory=static_dir, html=True),
        name="static",
    )
    return app


def run_web(app: FastAPI, host: str, port: int) -> None:
    import uvicorn

    uvicorn.run(app, host=host, port=port, log_level="info")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Update the dash scripts checkout whenever /update is requested"
    )
    parser.add_argument("repo", help="Path to the repository to manage")
    parser.add_argument(
        "--static-dir",
        default=str(DEFAULT_STATIC_DIR),
        help="Directory served for every path other than /update",
    )
    parser.add_argument(
        "--static-prefix", default="/", help="URL prefix stripped before file lookup"
    )
    parser.add_argument(
        "--post-action",
        choices=POST_ACTIONS,
        default="script",
        help="Run the post-update script or restart the service after pulling",
    )
    parser.add_argument("--service-name", default=None, help="Service to restart")
    parser.add_argument("--log-path", default=None, help="Optional log file")
    parser.add_argument("--host", default="0.0.0.0", help="Web host")
    parser.add_argument("--port", type=int, default=8080, help="Web port")
    args = parser.parse_args(argv)

    cfg = {
        "RepoPath": args.repo,
        "PostAction": args.post_action,
        "ServiceName": args.service_name,
        "LogPath": args.log_path,
    }
    try:
        settings = _settings_from_config(
            {key: value for key, value in cfg.items() if value is not None}
        )
    except (KeyError, TypeError, ValueError) as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)

    static_dir = Path(args.static_dir)
    if not static_dir.is_dir():
        print(f"ERROR code={EXIT_ENV} static directory not found: {static_dir}")
        sys.exit(EXIT_ENV)

    _setup_logging(settings.log_path)
    app = create_app(Reconciler(settings), static_dir, args.static_prefix)
    run_web(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
