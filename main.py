import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pymongo.errors import PyMongoError
from starlette.datastructures import FormData
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings
from context import AppContext
from database import SINGLETON_KEY
from errors import ApiError, NotFoundError, StoreUnavailableError, ValidationError, error_body
from schemas import (
    AboutUpdate,
    LandingUpdate,
    Product,
    ProductStatus,
    ProductStatusUpdate,
    ServicesUpdate,
    SiteConfig,
)
from storage import StoredImage, release, released_on_error, upload_all
from validation import (
    body_values,
    form_files,
    new_product_fields,
    product_changes,
    product_images,
    product_status_fields,
    reject_unexpected_files,
    settings_changes,
    text_changes,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SITE_DEFAULTS = SiteConfig().model_dump()

# ------------- Helpers -------------

def to_str_id(doc: dict) -> dict:
    if not doc:
        return doc
    d = {**doc}
    d.pop(SINGLETON_KEY, None)
    if d.get("_id"):
        d["id"] = str(d.pop("_id"))
    # convert datetime to iso
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
    return d


def image_fields(key: str, image: Optional[StoredImage]) -> dict:
    return {key: image.url if image else None, f"{key}PublicId": image.public_id if image else None}


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def require_store(ctx: AppContext = Depends(get_context)):
    if not ctx.store.is_ready():
        raise StoreUnavailableError(
            "Database unavailable",
            details="MongoDB connection is not ready. Please try again later.",
        )


async def read_form(request: Request):
    form = await request.form()
    try:
        yield form
    finally:
        await form.close()


def get_product_or_404(ctx: AppContext, product_id: str) -> dict:
    product = ctx.store.get_document("product", product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


def load_site_config(ctx: AppContext) -> dict:
    return ctx.store.get_or_create_singleton("siteconfig", SITE_DEFAULTS)


# ------------- Products -------------

products = APIRouter(prefix="/products", dependencies=[Depends(require_store)])


@products.post("/upload", status_code=201)
def create_product(form: FormData = Depends(read_form), ctx: AppContext = Depends(get_context)):
    logger.info("Product upload request")
    images = product_images(form)
    fields = new_product_fields(form, images)
    stored = upload_all(ctx.blobs, [images.main, *images.others])
    main, others = stored[0], stored[1:]
    product = Product(
        **fields,
        mainImage=main.url,
        mainImagePublicId=main.public_id,
        otherPhotos=[s.url for s in others],
        otherPhotosPublicIds=[s.public_id for s in others],
    )
    with released_on_error(ctx.blobs, stored):
        doc = ctx.store.create_document("product", product)
    logger.info(f"Product created: {doc['_id']}")
    return {"message": "Product created successfully!", "product": to_str_id(doc)}


@products.get("")
def list_products(status: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    filter_dict = {}
    if status is not None:
        filter_dict["status"] = ProductStatus.parse(status).value
    docs = ctx.store.get_documents("product", filter_dict, sort=[("uploadDate", -1)])
    return {"products": [to_str_id(d) for d in docs]}


@products.get("/status/{status}")
def list_products_by_status(status: str, ctx: AppContext = Depends(get_context)):
    product_status = ProductStatus.parse(status)
    docs = ctx.store.get_documents("product", {"status": product_status.value}, sort=[("uploadDate", -1)])
    return {"products": [to_str_id(d) for d in docs], "count": len(docs)}


@products.get("/{product_id}")
def get_product(product_id: str, ctx: AppContext = Depends(get_context)):
    return {"product": to_str_id(get_product_or_404(ctx, product_id))}


@products.put("/{product_id}")
def update_product(
    product_id: str,
    background_tasks: BackgroundTasks,
    form: FormData = Depends(read_form),
    ctx: AppContext = Depends(get_context),
):
    product = get_product_or_404(ctx, product_id)
    images = product_images(form)
    changes = product_changes(form)

    stored = upload_all(ctx.blobs, ([images.main] if images.main else []) + images.others)
    uploaded = list(stored)
    stale: List[Optional[str]] = []
    if images.main:
        main = stored.pop(0)
        changes.update(mainImage=main.url, mainImagePublicId=main.public_id)
        stale.append(product.get("mainImagePublicId"))
    if images.others:
        # whole-array replace, no diffing against the old photos
        changes.update(
            otherPhotos=[s.url for s in stored],
            otherPhotosPublicIds=[s.public_id for s in stored],
        )
        stale.extend(product.get("otherPhotosPublicIds") or [])

    with released_on_error(ctx.blobs, uploaded):
        updated = ctx.store.update_document("product", product_id, changes)
        if updated is None:
            raise NotFoundError("Product not found")
    background_tasks.add_task(release, ctx.blobs, stale)
    logger.info(f"Product updated: {product_id}")
    return {"message": "Product updated successfully", "product": to_str_id(updated)}


@products.patch("/{product_id}/status")
def update_product_status(
    product_id: str,
    payload: Optional[ProductStatusUpdate] = None,
    ctx: AppContext = Depends(get_context),
):
    changes = product_status_fields(body_values(payload))
    updated = ctx.store.update_document("product", product_id, changes)
    if updated is None:
        raise NotFoundError("Product not found")
    logger.info(f"Product status updated: {product_id} -> {updated.get('status')}")
    return {"message": "Product status updated successfully", "product": to_str_id(updated)}


@products.delete("/{product_id}")
def delete_product(
    product_id: str,
    background_tasks: BackgroundTasks,
    ctx: AppContext = Depends(get_context),
):
    product = get_product_or_404(ctx, product_id)
    if not ctx.store.delete_document("product", product_id):
        raise NotFoundError("Product not found")
    background_tasks.add_task(
        release,
        ctx.blobs,
        [product.get("mainImagePublicId"), *(product.get("otherPhotosPublicIds") or [])],
    )
    logger.info(f"Product deleted: {product_id}")
    return {"message": "Product deleted successfully"}


# ------------- Site settings -------------

site = APIRouter(prefix="/settings", dependencies=[Depends(require_store)])


@site.get("")
def get_settings(ctx: AppContext = Depends(get_context)):
    return {"settings": to_str_id(load_site_config(ctx))}


@site.put("")
def update_settings(
    background_tasks: BackgroundTasks,
    form: FormData = Depends(read_form),
    ctx: AppContext = Depends(get_context),
):
    reject_unexpected_files(form, ["landingBanner", "logo"])
    banner = form_files(form, "landingBanner", 1)
    logo = form_files(form, "logo", 1)
    changes = settings_changes(form)
    current = load_site_config(ctx)

    stored = upload_all(ctx.blobs, banner + logo)
    uploaded = list(stored)
    stale = []
    for key, uploads in (("landingBanner", banner), ("logo", logo)):
        if uploads:
            changes.update(image_fields(key, stored.pop(0)))
            stale.append(current.get(f"{key}PublicId"))

    with released_on_error(ctx.blobs, uploaded):
        settings = ctx.store.update_singleton("siteconfig", SITE_DEFAULTS, changes)
    background_tasks.add_task(release, ctx.blobs, stale)
    logger.info("Site settings updated")
    return {"message": "Settings updated successfully", "settings": to_str_id(settings)}


def _update_section(ctx: AppContext, payload, keys: Iterable[str], section: str) -> dict:
    changes = text_changes(body_values(payload), keys)
    settings = ctx.store.update_singleton("siteconfig", SITE_DEFAULTS, changes)
    logger.info(f"Site settings section updated: {section}")
    return {
        "message": f"{section.capitalize()} settings updated successfully",
        "settings": to_str_id(settings),
    }


@site.patch("/landing")
def update_landing(payload: Optional[LandingUpdate] = None, ctx: AppContext = Depends(get_context)):
    return _update_section(ctx, payload, ["landingTitle", "landingDescription"], "landing")


@site.patch("/about")
def update_about(payload: Optional[AboutUpdate] = None, ctx: AppContext = Depends(get_context)):
    return _update_section(ctx, payload, ["aboutText"], "about")


@site.patch("/services")
def update_services(payload: Optional[ServicesUpdate] = None, ctx: AppContext = Depends(get_context)):
    return _update_section(ctx, payload, ["servicesText"], "services")


def _replace_site_image(
    ctx: AppContext,
    background_tasks: BackgroundTasks,
    form: FormData,
    key: str,
    label: str,
) -> dict:
    reject_unexpected_files(form, [key])
    uploads = form_files(form, key, 1)
    if not uploads:
        raise ValidationError(f"{label} image required")
    current = load_site_config(ctx)
    image = ctx.blobs.upload(uploads[0])
    with released_on_error(ctx.blobs, [image]):
        settings = ctx.store.update_singleton("siteconfig", SITE_DEFAULTS, image_fields(key, image))
    background_tasks.add_task(release, ctx.blobs, [current.get(f"{key}PublicId")])
    logger.info(f"Site {label} replaced: {image.public_id}")
    return {"message": f"{label.capitalize()} updated successfully", "settings": to_str_id(settings)}


def _clear_site_image(ctx: AppContext, background_tasks: BackgroundTasks, key: str, label: str) -> dict:
    current = load_site_config(ctx)
    settings = ctx.store.update_singleton("siteconfig", SITE_DEFAULTS, image_fields(key, None))
    background_tasks.add_task(release, ctx.blobs, [current.get(f"{key}PublicId")])
    logger.info(f"Site {label} removed")
    return {"message": f"{label.capitalize()} removed successfully", "settings": to_str_id(settings)}


@site.patch("/banner")
def update_banner(
    background_tasks: BackgroundTasks,
    form: FormData = Depends(read_form),
    ctx: AppContext = Depends(get_context),
):
    return _replace_site_image(ctx, background_tasks, form, "landingBanner", "banner")


@site.delete("/banner")
def delete_banner(background_tasks: BackgroundTasks, ctx: AppContext = Depends(get_context)):
    return _clear_site_image(ctx, background_tasks, "landingBanner", "banner")


@site.patch("/logo")
def update_logo(
    background_tasks: BackgroundTasks,
    form: FormData = Depends(read_form),
    ctx: AppContext = Depends(get_context),
):
    return _replace_site_image(ctx, background_tasks, form, "logo", "logo")


@site.delete("/logo")
def delete_logo(background_tasks: BackgroundTasks, ctx: AppContext = Depends(get_context)):
    return _clear_site_image(ctx, background_tasks, "logo", "logo")


# ------------- Errors -------------

async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=error_body("invalid request", details))


async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content=error_body("database error", str(exc)))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=error_body(message), headers=exc.headers)


# ------------- App -------------

def log_endpoints(app: FastAPI) -> None:
    logger.info("Available endpoints:")
    for route in app.routes:
        if isinstance(route, APIRoute):
            for method in sorted(route.methods):
                logger.info(f"   {method:<7} {route.path}")


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the API. Without an explicit context one is created from the
    environment when the app starts, and closed when it stops.
    """
    settings = context.settings if context else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            app.state.context = AppContext.from_settings(settings)
        ctx = app.state.context
        try:
            ctx.store.ensure_indexes()
        except PyMongoError as e:
            logger.error(f"Could not ensure indexes: {e}")
        log_endpoints(app)
        yield
        logger.info("Shutting down")
        ctx.close()

    app = FastAPI(title="SmartHome Products API", lifespan=lifespan)
    app.state.context = context

    # registered before CORSMiddleware so it runs inside it
    @app.middleware("http")
    async def catch_unhandled(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            return JSONResponse(status_code=500, content=error_body(str(e) or "Something went wrong!"))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    @app.get("/")
    def read_root(request: Request):
        state = get_context(request).store.ready_state()
        return {
            "message": "SmartHome Products API running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if state == 1 else "disconnected",
            "readyState": state,
        }

    app.include_router(products)
    app.include_router(site)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Settings.from_env().port)
