import os
from typing import Any, Dict, Mapping
from uuid import uuid4

from flask import Flask, jsonify, request, session

from amc_calc.batch import process_all
from amc_calc.data_models import ContractInput, EngineConfig, ProductRecord, ScheduleKind
from amc_calc.engine import compute_schedule
from amc_calc.errors import InvalidInput
from amc_calc.products import calculate_product
from amc_calc.quarters import quarters_for_year
from amc_calc.utils import decimal_from_value, fraction_from_value, parse_date
from amc_calc_web.run_store import create_store_from_env

app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
app.config["BATCH_WORKERS"] = int(os.environ.get("AMC_BATCH_WORKERS", "1"))
app.config["MAX_BATCH_RECORDS"] = int(os.environ.get("AMC_MAX_BATCH_RECORDS", "50000"))
BASE_CONFIG = EngineConfig.from_mapping({"tax_rate": os.environ.get("AMC_TAX_RATE")})
run_store = create_store_from_env(
    os.environ.get("SCHEDULE_RUNS_DATABASE_URL"),
    os.environ.get("SCHEDULE_RUNS_MAX_PER_USER"),
)


def _ensure_user_token() -> str:
    token = session.get("user_token")
    if not token:
        token = uuid4().hex
        session["user_token"] = token
        session.modified = True
    return token


def _request_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidInput("body", "Request body must be a JSON object")
    return payload


def _engine_config(payload: Mapping[str, Any]) -> EngineConfig:
    settings = payload.get("settings") or {}
    if not isinstance(settings, dict):
        raise InvalidInput("settings", "settings must be an object")
    return EngineConfig.from_mapping(settings, base=BASE_CONFIG)


def _kind(payload: Mapping[str, Any]) -> ScheduleKind:
    try:
        return ScheduleKind(str(payload.get("kind", "amc")).lower())
    except ValueError as exc:
        raise InvalidInput("kind", "kind must be 'amc' or 'warranty'") from exc


def _int_field(data: Mapping[str, Any], name: str):
    value = data.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(name, f"{name} must be an integer") from exc


def _contract_from_payload(data: Mapping[str, Any], config: EngineConfig) -> ContractInput:
    rates = data.get("rates")
    if not isinstance(rates, list):
        raise InvalidInput("rates", "rates must be a list")
    return ContractInput(
        contract_start=parse_date(data.get("contract_start"), "contract_start"),
        total_value=decimal_from_value(data.get("total_value"), "total_value"),
        rates=tuple(fraction_from_value(r, "rates") for r in rates),
        tax_rate=fraction_from_value(data["tax_rate"], "tax_rate") if "tax_rate" in data else config.tax_rate,
        duration_years=_int_field(data, "duration_years"),
    )


@app.errorhandler(InvalidInput)
def handle_invalid_input(exc: InvalidInput):
    app.logger.info("Rejected request to %s: %s", request.path, exc)
    return jsonify({"error": str(exc), "field": exc.field}), 400


@app.get("/api/quarters/<int:year>")
def list_quarters(year: int):
    return jsonify(
        [
            {"key": str(key), "start": start.isoformat(), "end": end.isoformat(), "days": (end - start).days + 1}
            for key, start, end in quarters_for_year(year, BASE_CONFIG)
        ]
    )


@app.post("/api/schedule")
def schedule():
    """Compute one schedule, either for a raw contract or for a product."""
    payload = _request_payload()
    config = _engine_config(payload)
    if isinstance(payload.get("contract"), dict):
        result = compute_schedule(_contract_from_payload(payload["contract"], config), config)
        return jsonify(result.to_dict())
    if isinstance(payload.get("product"), dict):
        record = ProductRecord.from_dict(payload["product"], default_id="1")
        return jsonify(calculate_product(record, _kind(payload), config).to_dict())
    raise InvalidInput("body", "Request must contain a 'contract' or a 'product' object")


@app.post("/api/batch")
def batch():
    """Compute schedules for a list of product records, optionally saving the run."""
    payload = _request_payload()
    records = payload.get("records")
    if not isinstance(records, list):
        raise InvalidInput("records", "records must be a list")
    if len(records) > app.config["MAX_BATCH_RECORDS"]:
        raise InvalidInput("records", f"At most {app.config['MAX_BATCH_RECORDS']} records per request")
    config = _engine_config(payload)
    kind = _kind(payload)
    result = process_all(
        records,
        config,
        kind=kind,
        chunk_size=_int_field(payload, "chunk_size"),
        max_workers=app.config["BATCH_WORKERS"],
    )
    response = result.to_dict()
    if result.summary.errors:
        app.logger.warning("Batch finished with %d failed records", result.summary.errors)
    if payload.get("save"):
        user_token = _ensure_user_token()
        run_id = uuid4().hex
        name = str(payload.get("name") or "").strip() or "Batch run"
        run_store.add_run(user_token, run_id, name, kind.value, response["summary"], response["results"])
        response["run_id"] = run_id
    return jsonify(response)


@app.get("/api/runs")
def list_runs():
    return jsonify(run_store.list_runs(_ensure_user_token()))


@app.get("/api/runs/<run_id>")
def get_run(run_id: str):
    errors_only = request.args.get("errors_only", "").lower() in ("1", "true", "yes")
    run = run_store.get_run(session.get("user_token"), run_id, errors_only=errors_only)
    if run is None:
        return jsonify({"error": "Run not found"}), 404
    return jsonify(run)


@app.post("/api/runs/<run_id>/delete")
def remove_run(run_id: str):
    removed = run_store.remove_run(session.get("user_token"), run_id)
    return jsonify({"removed": removed}), (200 if removed else 404)


@app.post("/api/runs/clear")
def clear_runs():
    removed = run_store.clear_runs(session.get("user_token"))
    return jsonify({"cleared": removed})


if __name__ == "__main__":
    print("Starting AMC schedule API...")
    app.run(host="0.0.0.0", port=8710, debug=True)
