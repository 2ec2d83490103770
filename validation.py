"""
Request validation and mapping into document fields.

A field missing from the request leaves the stored value alone; a field
that is present, even as an empty string, overwrites it. Form data keeps
that distinction, so handlers read the raw form instead of declaring
Form() parameters (FastAPI turns empty form strings into "missing").
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from starlette.datastructures import FormData, UploadFile

from errors import UploadError, ValidationError
from schemas import MAX_OTHER_PHOTOS, ProductStatus
from storage import check_image

# text-area fields keep their formatting, everything else is trimmed
UNTRIMMED_FIELDS = {"description", "landingDescription", "aboutText", "servicesText"}

SETTINGS_TEXT_FIELDS = ["landingTitle", "landingDescription", "aboutText", "servicesText"]


def parse_name(value: Any) -> str:
    name = value.strip() if isinstance(value, str) else ""
    if not name:
        raise ValidationError("name required")
    return name


def parse_price(value: Any) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid price")
    if not math.isfinite(price) or price < 0:
        raise ValidationError("invalid price")
    return price


def parse_expected_arrival(value: Any) -> Optional[datetime]:
    """Empty or null clears the date; anything else must be an ISO timestamp."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("invalid expectedArrival", details=f"not a valid date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clean_text(key: str, value: Optional[str]) -> str:
    if value is None:
        return ""
    return value if key in UNTRIMMED_FIELDS else value.strip()


def text_changes(values: Mapping[str, Optional[str]], keys: Iterable[str]) -> Dict[str, str]:
    return {k: clean_text(k, values[k]) for k in keys if k in values}


# ------------- Forms -------------

def form_values(form: FormData) -> Dict[str, str]:
    """Plain text fields of a form; file parts are left out."""
    return {k: v for k, v in form.items() if isinstance(v, str)}


def form_files(form: FormData, key: str, max_count: int) -> List[UploadFile]:
    files = [v for v in form.getlist(key) if isinstance(v, UploadFile) and v.filename]
    if len(files) > max_count:
        raise UploadError("Too many files", details=f"{key} accepts at most {max_count}")
    for upload in files:
        check_image(upload)
    return files


def reject_unexpected_files(form: FormData, allowed: Iterable[str]) -> None:
    allowed = set(allowed)
    for key, value in form.multi_items():
        if isinstance(value, UploadFile) and value.filename and key not in allowed:
            raise UploadError("Unexpected field", details=key)


@dataclass
class ProductImages:
    main: Optional[UploadFile] = None
    others: List[UploadFile] = field(default_factory=list)


def product_images(form: FormData) -> ProductImages:
    reject_unexpected_files(form, ["mainImage", "otherPhotos"])
    main = form_files(form, "mainImage", 1)
    return ProductImages(main=main[0] if main else None, others=form_files(form, "otherPhotos", MAX_OTHER_PHOTOS))


def product_status_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if "status" in values:
        changes["status"] = ProductStatus.parse(values["status"]).value
    if "statusNote" in values:
        changes["statusNote"] = clean_text("statusNote", values["statusNote"])
    if "expectedArrival" in values:
        changes["expectedArrival"] = parse_expected_arrival(values["expectedArrival"])
    return changes


def new_product_fields(form: FormData, images: ProductImages) -> Dict[str, Any]:
    """Fields for a new product, minus the image URLs which come from the upload."""
    values = form_values(form)
    fields = {
        "name": parse_name(values.get("name")),
        "price": parse_price(values.get("price")),
    }
    if images.main is None:
        raise ValidationError("main image required")
    fields.update(text_changes(values, ["description", "classifications"]))
    fields.update(product_status_fields(values))
    return fields


def product_changes(form: FormData) -> Dict[str, Any]:
    values = form_values(form)
    changes: Dict[str, Any] = {}
    if "name" in values:
        changes["name"] = parse_name(values["name"])
    if "price" in values:
        changes["price"] = parse_price(values["price"])
    changes.update(text_changes(values, ["description", "classifications"]))
    changes.update(product_status_fields(values))
    return changes


def settings_changes(form: FormData) -> Dict[str, str]:
    return text_changes(form_values(form), SETTINGS_TEXT_FIELDS)


def body_values(payload) -> Dict[str, Any]:
    """Fields a JSON body actually carried, explicit nulls included."""
    if payload is None:
        return {}
    return {k: getattr(payload, k) for k in payload.model_fields_set}
