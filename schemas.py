"""
Database Schemas

Pydantic models for the MongoDB collections and the JSON request bodies.
Model name is converted to lowercase for the collection name:
- Product -> "product" collection
- SiteConfig -> "siteconfig" collection (a single document)
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import ValidationError

MAX_OTHER_PHOTOS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductStatus(str, Enum):
    AVAILABLE = "available"
    RESTORING = "restoring"
    ON_THE_WAY = "on_the_way"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"

    @classmethod
    def values(cls) -> List[str]:
        return [s.value for s in cls]

    @classmethod
    def parse(cls, value) -> "ProductStatus":
        """Map a wire string to a status, rejecting anything unknown."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError("invalid status", valid_statuses=cls.values())


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., min_length=1, description="Product name, trimmed")
    price: float = Field(..., ge=0)
    mainImage: str = Field(..., description="Public URL of the main image")
    mainImagePublicId: str = Field(..., description="Blob identifier of the main image")
    otherPhotos: List[str] = Field(default_factory=list, max_length=MAX_OTHER_PHOTOS)
    otherPhotosPublicIds: List[str] = Field(default_factory=list, max_length=MAX_OTHER_PHOTOS)
    description: str = ""
    classifications: str = ""
    status: ProductStatus = ProductStatus.AVAILABLE
    statusNote: str = ""
    expectedArrival: Optional[datetime] = None
    uploadDate: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def photos_match_ids(self):
        if len(self.otherPhotos) != len(self.otherPhotosPublicIds):
            raise ValueError("otherPhotos and otherPhotosPublicIds must have the same length")
        return self


class SiteConfig(BaseModel):
    """
    Site settings schema
    Collection name: "siteconfig" (only one document ever exists)
    """
    landingTitle: str = ""
    landingDescription: str = ""
    aboutText: str = ""
    servicesText: str = ""
    landingBanner: Optional[str] = None
    landingBannerPublicId: Optional[str] = None
    logo: Optional[str] = None
    logoPublicId: Optional[str] = None


# Request bodies. Only the fields a client actually sends are applied,
# see model_fields_set.

class ProductStatusUpdate(BaseModel):
    # left untyped; ProductStatus.parse and parse_expected_arrival check them
    status: Optional[Any] = None
    statusNote: Optional[str] = None
    expectedArrival: Optional[Any] = None


class LandingUpdate(BaseModel):
    landingTitle: Optional[str] = None
    landingDescription: Optional[str] = None


class AboutUpdate(BaseModel):
    aboutText: Optional[str] = None


class ServicesUpdate(BaseModel):
    servicesText: Optional[str] = None
