import os
import traceback
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError as FastAPIValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from verimark import config
from verimark.clients.ledger_client import LedgerClient
from verimark.clients.storage_client import StorageClient, get_storage_client
from verimark.db.database import get_db, init_db
from verimark.exceptions import RequestValidationError, UnauthorizedError, VerimarkError
from verimark.models import (
    DownloadOptions,
    DownloadRequest,
    PlacementMethod,
    ProductRegisterRequest,
    TemplateActivateRequest,
    TemplateCreateRequest,
    TemplateUpdateRequest,
)
from verimark.services.placement_resolver import PlacementResolver, create_default_placement
from verimark.services.product_downloader import ProductDownloader
from verimark.services.product_registry import ProductRegistry
from verimark.services.qr_generator import build_verification_url
from verimark.services.template_service import TemplateService
from verimark.utils.logging_config import get_logger, setup_logging

# Setup logging
setup_logging()
logger = get_logger(__name__)

app = FastAPI(title="Verimark")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(config.STORAGE_DIR, exist_ok=True)
app.mount("/files", StaticFiles(directory=config.STORAGE_DIR), name="files")


@app.on_event("startup")
async def startup_event():
    """Initialize the database when the application starts."""
    logger.info("Initializing database...")
    init_db()
    logger.info("Database initialized successfully!")


@app.exception_handler(VerimarkError)
async def verimark_error_handler(request: Request, exc: VerimarkError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(FastAPIValidationError)
async def request_validation_handler(request: Request, exc: FastAPIValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    error = RequestValidationError("; ".join(messages) or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error in {request.method} {request.url.path}: {exc}")
    logger.error(traceback.format_exc())
    return JSONResponse(
        status_code=500, content={"success": False, "error": "Internal server error"}
    )


def get_company_id(x_company_id: Optional[str] = Header(None)) -> int:
    """Authenticated company, as asserted by the session layer in front of the API."""
    if not x_company_id:
        raise UnauthorizedError()
    try:
        return int(x_company_id)
    except ValueError:
        raise UnauthorizedError()


def get_ledger_client() -> LedgerClient:
    return LedgerClient()


def get_placement_resolver() -> PlacementResolver:
    return PlacementResolver()


@app.get("/health")
async def health_check():
    """Health check endpoint for container probes."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/api/products/download")
async def download_products(
    request: DownloadRequest,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
    storage: StorageClient = Depends(get_storage_client),
):
    """
    Export products as standalone QR codes or embedded in the active template.

    A partially failed batch still answers ``success: true``; failures are
    listed in ``stats.failedItems``.
    """
    logger.info(
        f"Download requested by company {company_id}: {len(request.productIds)} product(s), "
        f"format={request.format}, outputType={request.outputType}"
    )
    downloader = ProductDownloader(db, storage)
    if request.format == "qr-only":
        result = await downloader.download_qr_only(request.productIds, company_id)
    else:
        options = DownloadOptions(
            include_metadata=request.includeMetadata,
            pdf_layout=request.pdfLayout,
            columns=request.columns,
            rows=request.rows,
        )
        result = await downloader.download_embedded(
            request.productIds, company_id, request.outputType, options
        )
    return {"success": True, **result.to_dict()}


@app.post("/api/products/register")
async def register_product(
    request: ProductRegisterRequest,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    record = await ProductRegistry(db, ledger).register_product(company_id, request)
    return {
        "success": True,
        "product": record.to_dict(),
        "verificationUrl": build_verification_url(record.qr_hash, record.product_id),
    }


@app.get("/api/products/verify")
async def verify_product(
    hash: str = Query(..., min_length=1),
    pid: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Public endpoint behind every printed QR code."""
    return ProductRegistry(db).verify(hash, pid)


@app.get("/api/design-templates")
async def list_templates(
    company_id: int = Depends(get_company_id), db: Session = Depends(get_db)
):
    templates = TemplateService(db).list_templates(company_id)
    return {"success": True, "templates": [t.to_dict() for t in templates]}


@app.post("/api/design-templates")
async def create_template(
    request: TemplateCreateRequest,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    template = TemplateService(db).create_template(
        company_id,
        name=request.name,
        template_url=request.templateUrl,
        qr_placement=request.qrPlacement.to_placement(),
        placeholder_color=request.placeholderColor,
        placeholder_text=request.placeholderText,
    )
    return {"success": True, "template": template.to_dict()}


@app.put("/api/design-templates")
async def update_template(
    request: TemplateUpdateRequest,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    sent = request.model_dump(exclude_unset=True)
    fields = {}
    if "name" in sent:
        fields["name"] = request.name
    if request.qrPlacement is not None:
        fields["qr_placement"] = request.qrPlacement.to_placement()
    if "placeholderColor" in sent:
        fields["placeholder_color"] = request.placeholderColor
    if "placeholderText" in sent:
        fields["placeholder_text"] = request.placeholderText

    template = TemplateService(db).update_template(company_id, request.id, **fields)
    return {"success": True, "template": template.to_dict()}


@app.delete("/api/design-templates")
async def delete_template(
    id: int = Query(...),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    TemplateService(db).delete_template(company_id, id)
    return {"success": True, "message": "Template deleted successfully"}


@app.patch("/api/design-templates")
async def activate_template(
    request: TemplateActivateRequest,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    template = TemplateService(db).set_active_template(company_id, request.id)
    return {"success": True, "message": "Template set as active", "template": template.to_dict()}


@app.post("/api/design-templates/upload")
async def upload_template(
    design: Optional[UploadFile] = File(None),
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
    storage: StorageClient = Depends(get_storage_client),
):
    if design is None:
        raise RequestValidationError("Design file is required")
    data = await design.read()
    result = TemplateService(db).upload_template(
        company_id, design.filename, data, design.content_type, storage
    )
    return {"success": True, **result}


@app.post("/api/design-templates/detect-placement")
async def detect_placement(
    design: Optional[UploadFile] = File(None),
    placeholderColor: Optional[str] = Form(None),
    textMarker: Optional[str] = Form(None),
    company_id: int = Depends(get_company_id),
    resolver: PlacementResolver = Depends(get_placement_resolver),
):
    """
    Suggest QR placements for an uploaded design.

    When no detector finds anything, the centered default placement is
    returned with method ``default``.
    """
    if design is None:
        raise RequestValidationError("Design file is required")
    data = await design.read()

    result = await resolver.resolve_all(
        data, placeholder_color=placeholderColor or None, text_marker=textMarker or None
    )
    if result.image_dimensions is None:
        raise RequestValidationError(f"Invalid design file: {result.error}")

    detected = result.success
    if not detected:
        default = create_default_placement(result.image_dimensions)
        if default is not None:
            result.placements.append(default)
            result.methods.append(PlacementMethod.DEFAULT.value)
    logger.info(f"Company {company_id} placement detection: methods={result.methods}")
    return {**result.to_dict(), "success": True, "detected": detected}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
