import os
from typing import Annotated, Literal, Mapping, Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "DOCSTORE_"


class StoreConfig(BaseModel):
    backend: Literal["memory", "mongo", "dynamodb"] = "memory"
    table_name: str = "documents"
    # Maximum records a single query returns; None means unbounded
    page_limit: Optional[Annotated[int, Field(gt=0)]] = 100
    metadata_collection: str = "_metadata_"
    metadata_cache: Literal["memory", "redis"] = "memory"

    mongo_url: str = "mongodb://localhost:27017/"
    mongo_database: str = "docstore"

    aws_region: str = "us-east-1"
    dynamodb_endpoint_url: Optional[str] = None

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        """Reads DOCSTORE_<FIELD> variables, e.g. DOCSTORE_BACKEND=mongo."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name == "page_limit" and raw.lower() in ("", "none", "0"):
                values[name] = None
            else:
                values[name] = raw
        return cls(**values)
