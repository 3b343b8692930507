from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from joinctl.modules.k3s.catalog import CatalogStore
from joinctl.modules.k3s.codec import validate_record
from joinctl.modules.k3s.errors import PayloadValidationError
from joinctl.modules.k3s.models import record_key

router = APIRouter()


class ClusterInfoRecord(BaseModel):
    cluster_name: str
    server_url: str
    token: str
    server_fqdn: str = ""
    server_ip: str = ""
    server_node: str = ""
    is_primary: bool = False
    export_time: int = 0
    tag: str = ""


def get_catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog


@router.put("/records/{key}")
def put_record(key: str, req: ClusterInfoRecord, catalog: CatalogStore = Depends(get_catalog)):
    try:
        record = validate_record(req.model_dump(), source=f"api:{key}")
    except PayloadValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    if key != record_key(record.cluster_name, record.server_node):
        raise HTTPException(status_code=422,
                            detail=f"Key {key} does not match {record_key(record.cluster_name, record.server_node)}")
    replaced = catalog.get(key) is not None
    catalog.put(record)
    return {"key": key, "replaced": replaced}


@router.get("/records")
def list_records(
    cluster_name: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    catalog: CatalogStore = Depends(get_catalog),
) -> List[dict]:
    return [record.to_dict() for record in catalog.query(cluster_name=cluster_name, tag=tag)]


@router.get("/records/{key}")
def get_record(key: str, catalog: CatalogStore = Depends(get_catalog)):
    record = catalog.get(key)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No record {key}")
    return record.to_dict()


@router.delete("/records/{key}")
def delete_record(key: str, catalog: CatalogStore = Depends(get_catalog)):
    if not catalog.delete(key):
        raise HTTPException(status_code=404, detail=f"No record {key}")
    return {"deleted": key}
