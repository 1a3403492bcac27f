import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from document_store import DocumentStore
from store_config import StoreConfig
from store_errors import BackendCallError, ConfigurationError, LogicalInputError

logger = logging.getLogger(__name__)

config = StoreConfig.from_env()
store = DocumentStore.from_config(config)


def get_store() -> DocumentStore:
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await store.close()


app = FastAPI(title="Indexed document store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

SortPair = Tuple[str, str]


class QueryRequest(BaseModel):
    filter: Dict[str, Any] = {}
    sort: Optional[Union[SortPair, List[SortPair]]] = None
    limit: Optional[int] = None


class CountRequest(BaseModel):
    filter: Dict[str, Any] = {}
    sort: Optional[Union[SortPair, List[SortPair]]] = None


class UpdateRequest(BaseModel):
    record: Dict[str, Any]
    previous: Optional[Dict[str, Any]] = None


class BatchWriteRequest(BaseModel):
    records: List[Dict[str, Any]]


class BatchGetRequest(BaseModel):
    ids: List[Union[str, Dict[str, Any]]]


@app.exception_handler(LogicalInputError)
async def logical_input_error(request: Request, exc: LogicalInputError):
    return JSONResponse(status_code=400, content={"status": "error", "message": str(exc)})


@app.exception_handler(BackendCallError)
async def backend_call_error(request: Request, exc: BackendCallError):
    logger.error("Backend call failed: %s", exc)
    return JSONResponse(status_code=502, content={"status": "error", **exc.to_dict()})


@app.exception_handler(ConfigurationError)
async def configuration_error(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})


@app.get("/collections/{collection}/records/{id}")
async def read_record(collection: str, id: str, store: DocumentStore = Depends(get_store)):
    record = await store.read(collection, id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No record '{id}' in '{collection}'")
    return record


@app.put("/collections/{collection}/records")
async def update_record(collection: str, request: UpdateRequest, store: DocumentStore = Depends(get_store)):
    return await store.update(collection, request.record, previous=request.previous)


@app.delete("/collections/{collection}/records/{id}")
async def delete_record(collection: str, id: str, store: DocumentStore = Depends(get_store)):
    record = await store.delete(collection, id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No record '{id}' in '{collection}'")
    return record


@app.delete("/collections/{collection}/records")
async def delete_all_records(collection: str, store: DocumentStore = Depends(get_store)):
    deleted = await store.delete_all(collection)
    return {"status": "success", "deleted": deleted}


@app.post("/collections/{collection}/query")
async def query_records(collection: str, request: QueryRequest, store: DocumentStore = Depends(get_store)):
    items = await store.query(collection, filter=request.filter, sort=request.sort, limit=request.limit)
    return {"items": items}


@app.post("/collections/{collection}/count")
async def count_records(collection: str, request: CountRequest, store: DocumentStore = Depends(get_store)):
    return {"count": await store.count(collection, filter=request.filter, sort=request.sort)}


@app.post("/collections/{collection}/batch_write")
async def batch_write_records(collection: str, request: BatchWriteRequest, store: DocumentStore = Depends(get_store)):
    await store.batch_write(collection, request.records)
    return {"status": "success", "written": len(request.records)}


@app.post("/collections/{collection}/batch_get")
async def batch_get_records(collection: str, request: BatchGetRequest, store: DocumentStore = Depends(get_store)):
    return {"items": await store.batch_get(collection, request.ids)}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
