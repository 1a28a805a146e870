import json
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

# Make src/ importable on Azure (repo uses src/ layout)
sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

import azure.functions as func

app = func.FunctionApp(http_auth_level=func.AuthLevel.FUNCTION)

REPO_ROOT = Path(__file__).resolve().parent


def _ts_utc() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _request_id(req: func.HttpRequest) -> str:
    rid = (req.headers.get("x-request-id") or "").strip()
    return rid if rid else uuid.uuid4().hex


def _run_report(send: bool = True) -> dict:
    from lra.common.config import load_base_config, read_logging_from_env
    from lra.common.log import setup_logging
    from lra.pipeline.wiring import build_pipeline_from_env

    cfg = load_base_config(REPO_ROOT)
    log_root, level = read_logging_from_env(cfg)
    setup_logging(log_root, level)

    pipeline = build_pipeline_from_env(REPO_ROOT, cfg)
    report = pipeline.compute()
    if send:
        pipeline.notify(report)
    return {
        "abnormal_labs": report.abnormal_labs,
        "abnormal_vitals": report.abnormal_vitals,
        "patients": len(report.patients),
        "patients_with_abnormal": len(report.patients_with_abnormal),
        "sent": send,
    }


@app.timer_trigger(schedule="%REPORT_SCHEDULE%", arg_name="timer", run_on_startup=False, use_monitor=True)
def daily_report(timer: func.TimerRequest) -> None:
    from loguru import logger

    if timer.past_due:
        logger.warning("Report timer is past due; running now")
    # errors propagate so the host records the invocation as failed
    summary = _run_report(send=True)
    logger.info(f"Scheduled report run finished: {summary}")


@app.route(route="healthz", methods=["GET"])
def healthz(req: func.HttpRequest) -> func.HttpResponse:
    rid = _request_id(req)
    return func.HttpResponse(
        json.dumps({"status": "ok", "request_id": rid, "ts_utc": _ts_utc()}),
        status_code=200,
        mimetype="application/json",
    )


@app.route(route="report/run", methods=["POST"])
def run_report(req: func.HttpRequest) -> func.HttpResponse:
    from lra.common.errors import LabAlertError, NotificationError

    rid = _request_id(req)
    t0 = time.time()
    send = (req.params.get("send") or "true").strip().lower() not in {"0", "false", "no"}

    try:
        summary = _run_report(send=send)
    except NotificationError as e:
        return func.HttpResponse(
            json.dumps({"status": "notify_failed", "request_id": rid, **e.to_dict()}),
            status_code=502,
            mimetype="application/json",
        )
    except LabAlertError as e:
        return func.HttpResponse(
            json.dumps({"status": "error", "request_id": rid, **e.to_dict()}),
            status_code=500,
            mimetype="application/json",
        )

    return func.HttpResponse(
        json.dumps(
            {
                "status": "ok",
                "request_id": rid,
                "duration_ms": int((time.time() - t0) * 1000),
                "ts_utc": _ts_utc(),
                **summary,
            }
        ),
        status_code=200,
        mimetype="application/json",
    )
