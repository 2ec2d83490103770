"""
Application settings

Values come from the environment (a local .env file is loaded if present).
"""
import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "smarthome"
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    cloudinary_folder: str = "smarthome-products"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 5001

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") or cls.model_fields["database_url"].default,
            database_name=os.getenv("DATABASE_NAME") or cls.model_fields["database_name"].default,
            cloudinary_cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME", ""),
            cloudinary_api_key=os.getenv("CLOUDINARY_API_KEY", ""),
            cloudinary_api_secret=os.getenv("CLOUDINARY_API_SECRET", ""),
            cloudinary_folder=os.getenv("CLOUDINARY_FOLDER") or cls.model_fields["cloudinary_folder"].default,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            port=int(os.getenv("PORT", 5001)),
        )
