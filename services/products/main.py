"""Products service API built with FastAPI.

Exposes the product snapshot read and the idempotent stock decrement the
orders service calls after a payment settles. Validation is performed with
Pydantic models, while persistence is delegated to the SQLAlchemy-backed
repository in ``repo.ProductRepo``.
"""

import logging
import time
import uuid

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from repo import ProductRepo, engine, init_db

app = FastAPI(title="Products Service")

logger = logging.getLogger("products")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class ProductOut(BaseModel):
    id: str
    name: str
    price: int
    seller_id: str
    status: str
    quantity: int


class DecrementRequest(BaseModel):
    """Request body for the decrement endpoint.

    Attributes:
        amount: Units to remove from stock.
        idempotency_key: Caller key; the same key decrements at most once.
    """

    amount: int = Field(gt=0)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=128)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str):
    product = ProductRepo().get(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return product


@app.post("/products/{product_id}/decrement", response_model=ProductOut)
def decrement(product_id: str, req: DecrementRequest, idempotency_key: str | None = Header(default=None)):
    """Decrement stock once per idempotency key.

    The key is taken from the body, falling back to the ``Idempotency-Key``
    header.

    Raises:
        HTTPException: 400 when no key is given, 404 for an unknown product.
    """
    key = req.idempotency_key or idempotency_key
    if not key:
        raise HTTPException(status_code=400, detail="IDEMPOTENCY_KEY_REQUIRED")
    product = ProductRepo().decrement(product_id, req.amount, key)
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    logger.info(
        "stock decremented",
        extra={"product_id": product_id, "amount": req.amount, "remaining": product["quantity"], "key": key},
    )
    return product


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
