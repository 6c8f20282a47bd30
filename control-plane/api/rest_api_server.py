# File: control-plane/api/rest_api_server.py
#!/usr/bin/env python3
"""
Postgres Control Plane REST API Server

FastAPI-based REST API over the simulated platform.
Covers:
- Clusters (create, list, inspect, delete)
- Instances and consensus records of a cluster
- Teardown progress and on-demand reconciliation
- Namespaces (delete)
- HA agent switchover
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from metrics import METRICS
from reconciler import naming
from reconciler.reconciler import ReconcileDriver, get_reconciler
from reconciler.resources import (
    ClusterKey,
    ConflictError,
    NotFoundError,
    PropagationPolicy,
    TeardownPhase,
    TransientPlatformError,
)

from . import shared_api_logic as services
from .models import SessionLocal, init_db

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Postgres Control Plane API",
    description="Simulated platform and teardown controller for HA Postgres clusters",
    version="1.0.0",
)


@app.on_event("startup")
def initialize_database_and_metrics():
    init_db()
    db = SessionLocal()
    try:
        services._refresh_gauges(db)
    except Exception as e:
        logger.warning(f"Could not initialize metrics: {e}")
    finally:
        db.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_driver() -> ReconcileDriver:
    return get_reconciler()


class ClusterCreate(BaseModel):
    namespace: str = Field("default", min_length=1, max_length=63)
    name: str = Field(..., min_length=1, max_length=63)
    image: str = Field(..., min_length=1)
    postgres_version: int = Field(..., ge=10)
    replicas: int = Field(1, ge=1, le=9)


class Cluster(BaseModel):
    uid: str
    namespace: str
    name: str
    replicas: int
    image: str
    postgres_version: int
    finalizers: List[str]
    deletion_timestamp: Optional[datetime]
    propagation: Optional[str]
    status: Dict[str, Any]
    resource_version: int
    created_at: datetime


class Instance(BaseModel):
    name: str
    workload: str
    role: str
    ready: bool
    terminating: bool
    created_at: datetime


class ConsensusRecord(BaseModel):
    name: str
    kind: str
    uid: str
    annotations: Dict[str, Any]
    created_at: datetime


class SwitchoverRequest(BaseModel):
    candidate: Optional[str] = None


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
    start = time.time()
    response = await call_next(request)
    METRICS["api_latency"].labels(method=request.method).observe((time.time() - start) * 1000)
    return response


def _get_cluster_or_404(db: Session, namespace: str, name: str):
    cluster = services.get_cluster_logic(db, namespace, name)
    if not cluster:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return cluster


@app.post("/clusters", response_model=Cluster, status_code=201)
def create_cluster(
    cluster: ClusterCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    driver: ReconcileDriver = Depends(get_driver),
):
    try:
        new_cluster = services.create_cluster_logic(
            db, cluster.namespace, cluster.name, cluster.image, cluster.postgres_version, cluster.replicas
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    driver.enqueue(ClusterKey(cluster.namespace, cluster.name))
    background_tasks.add_task(services.provision_cluster_task, SessionLocal, cluster.namespace, cluster.name)
    return new_cluster


@app.get("/clusters", response_model=List[Cluster])
def list_clusters(namespace: Optional[str] = None, db: Session = Depends(get_db)):
    return services.list_clusters_logic(db, namespace=namespace)


@app.get("/clusters/{namespace}/{name}", response_model=Cluster)
def get_cluster(namespace: str, name: str, db: Session = Depends(get_db)):
    return _get_cluster_or_404(db, namespace, name)


@app.delete("/clusters/{namespace}/{name}", status_code=202)
def delete_cluster(
    namespace: str,
    name: str,
    propagation: Optional[str] = None,
    db: Session = Depends(get_db),
    driver: ReconcileDriver = Depends(get_driver),
):
    try:
        policy = PropagationPolicy.parse(propagation)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    _get_cluster_or_404(db, namespace, name)
    try:
        cluster = services.request_cluster_delete_logic(db, namespace, name, policy)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    driver.enqueue(ClusterKey(namespace, name))
    if cluster is None:
        return {"message": "Cluster deleted"}
    return {
        "message": "Cluster deletion initiated",
        "deletion_timestamp": cluster.deletion_timestamp.isoformat(),
        "propagation": cluster.propagation,
    }


@app.get("/clusters/{namespace}/{name}/instances", response_model=List[Instance])
def list_instances(namespace: str, name: str, db: Session = Depends(get_db)):
    _get_cluster_or_404(db, namespace, name)
    return [
        Instance(
            name=row.name,
            workload=row.workload,
            role=naming.role_from_label((row.labels or {}).get(naming.LABEL_ROLE)).value,
            ready=bool(row.ready),
            terminating=row.deletion_timestamp is not None,
            created_at=row.created_at,
        )
        for row in services.list_instances_logic(db, namespace, name)
    ]


@app.get("/clusters/{namespace}/{name}/consensus-records", response_model=List[ConsensusRecord])
def list_consensus_records(namespace: str, name: str, db: Session = Depends(get_db)):
    _get_cluster_or_404(db, namespace, name)
    return [
        ConsensusRecord(
            name=row.name,
            kind=row.kind,
            uid=row.uid,
            annotations=row.annotations or {},
            created_at=row.created_at,
        )
        for row in services.list_consensus_records_logic(db, namespace, name)
    ]


@app.get("/clusters/{namespace}/{name}/teardown")
def get_teardown(namespace: str, name: str, driver: ReconcileDriver = Depends(get_driver)):
    """Teardown phase derived from what the platform reports now."""
    key = ClusterKey(namespace, name)
    try:
        plan = driver.teardown.observe(driver.client.get_cluster(key))
    except NotFoundError:
        return {"cluster": str(key), "phase": TeardownPhase.GONE.value, "next_action": "none", "pending": []}
    except TransientPlatformError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "cluster": str(key),
        "phase": plan.phase.value,
        "next_action": plan.action,
        "pending": [i.name for i in plan.instances] + [r.name for r in plan.records],
    }


@app.post("/clusters/{namespace}/{name}/reconcile")
def reconcile_cluster(namespace: str, name: str, driver: ReconcileDriver = Depends(get_driver)):
    result = driver.reconcile_now(ClusterKey(namespace, name))
    if result is None:
        raise HTTPException(status_code=409, detail="Reconcile already in progress")
    return {
        "phase": result.phase.value if result.phase else None,
        "requeue": result.requeue,
        "requeue_after": result.requeue_after,
        "actions_taken": result.actions_taken,
        "errors": result.errors,
    }


@app.post("/clusters/{namespace}/{name}/switchover")
def switchover(namespace: str, name: str, request: SwitchoverRequest, db: Session = Depends(get_db)):
    _get_cluster_or_404(db, namespace, name)
    try:
        return services.switchover_logic(db, namespace, name, request.candidate)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.delete("/namespaces/{namespace}", status_code=202)
def delete_namespace(
    namespace: str,
    db: Session = Depends(get_db),
    driver: ReconcileDriver = Depends(get_driver),
):
    ns = services.request_namespace_delete_logic(db, namespace)
    if ns is None:
        raise HTTPException(status_code=404, detail="Namespace not found")
    for cluster in services.list_clusters_logic(db, namespace=namespace):
        driver.enqueue(ClusterKey(namespace, cluster.name))
    return {"message": "Namespace deletion initiated"}
