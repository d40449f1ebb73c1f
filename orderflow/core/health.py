"""
Health, readiness and metrics endpoints.

Checks report ``pass``/``warn``/``fail`` in the shape of the "Health Check
Response Format for HTTP APIs" draft and the overall status is the worst
of them. Readiness covers the order schema as well as the database and
the host; ``/metrics`` adds the gauges the service registers (realtime
clients, cached order snapshots, live aggregates).
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from typing import Any, Callable, Dict, Optional
import os
import time
from datetime import datetime
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

# The service cannot route a single order without these
REQUIRED_TABLES = (
    "orders", "order_items", "timeline", "order_files",
    "notifications", "profiles", "user_roles", "wc_customers", "delay_reasons",
)

Gauge = Callable[[], Any]
Check = Dict[str, Any]


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _component(state: HealthStatus, component_type: str, **details) -> Check:
    return {"status": state, "componentType": component_type, "time": _now(), **details}


def _threshold(value: float, fail_below: float, warn_below: float) -> HealthStatus:
    if value < fail_below:
        return HealthStatus.FAIL
    if value < warn_below:
        return HealthStatus.WARN
    return HealthStatus.PASS


class ServiceHealth:
    """Health router bound to the service's database engine"""

    def __init__(self, service_name: str, engine_provider: Callable[[], Engine], version: str = "1.0.0",
                 gauges: Optional[Dict[str, Gauge]] = None):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.gauges: Dict[str, Gauge] = dict(gauges or {})
        self.started_at = time.time()
        self.checks_performed = 0

    def register_gauge(self, name: str, gauge: Gauge) -> None:
        self.gauges[name] = gauge

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Cheap liveness check for load balancers"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """503 unless every dependency passes"""
            return self._report(self.readiness_checks())

        @router.get("/health/startup")
        async def startup() -> JSONResponse:
            """503 until the migrations have created the order schema"""
            return self._report({"database:schema": self.check_schema()})

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.started_at,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "orderflow": self.read_gauges(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads()
                }
            }

        return router

    def _report(self, checks: Dict[str, Check]) -> JSONResponse:
        overall = self.calculate_overall_status(checks)
        code = status.HTTP_200_OK if overall == HealthStatus.PASS else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content={
            "status": overall,
            "serviceId": self.service_name,
            "version": self.version,
            "checks": checks,
            "timestamp": _now()
        })

    def read_gauges(self) -> Dict[str, Any]:
        values = {}
        for name, gauge in self.gauges.items():
            try:
                values[name] = gauge()
            except Exception:
                logger.warning(f"Gauge {name} could not be read", exc_info=True)
                values[name] = None
        return values

    def readiness_checks(self) -> Dict[str, Check]:
        self.checks_performed += 1
        return {
            "database:connectivity": self.check_database(),
            "database:schema": self.check_schema(),
            "system:disk": self.check_disk(),
            "system:memory": self.check_memory(),
        }

    def check_database(self) -> Check:
        started = time.time()
        try:
            with self.engine_provider().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return _component(HealthStatus.FAIL, "datastore", output=str(e))
        return _component(HealthStatus.PASS, "datastore",
                          observedValue=round((time.time() - started) * 1000, 2), observedUnit="ms")

    def check_schema(self) -> Check:
        try:
            tables = set(inspect(self.engine_provider()).get_table_names())
        except Exception as e:
            return _component(HealthStatus.FAIL, "datastore", output=str(e))
        missing = [table for table in REQUIRED_TABLES if table not in tables]
        if missing:
            return _component(HealthStatus.FAIL, "datastore", output=f"Missing tables: {', '.join(missing)}")
        return _component(HealthStatus.PASS, "datastore", observedValue=len(REQUIRED_TABLES))

    def check_disk(self) -> Check:
        try:
            free_gb = psutil.disk_usage('/').free / (1024 ** 3)
        except Exception as e:
            return _component(HealthStatus.WARN, "system", output=str(e))
        return _component(_threshold(free_gb, 1, 5), "system", observedValue=round(free_gb, 2), observedUnit="GB")

    def check_memory(self) -> Check:
        try:
            available_mb = psutil.virtual_memory().available / (1024 ** 2)
        except Exception as e:
            return _component(HealthStatus.WARN, "system", output=str(e))
        return _component(_threshold(available_mb, 100, 500), "system",
                          observedValue=round(available_mb, 2), observedUnit="MB")

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Check]) -> HealthStatus:
        statuses = {check.get("status", HealthStatus.PASS) for check in checks.values()}
        for state in (HealthStatus.FAIL, HealthStatus.WARN):
            if state in statuses:
                return state
        return HealthStatus.PASS
