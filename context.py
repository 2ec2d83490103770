from dataclasses import dataclass

from config import Settings
from database import DocumentStore
from storage import CloudinaryBlobStore


@dataclass
class AppContext:
    """Everything a request handler needs, built once at startup."""
    settings: Settings
    store: DocumentStore
    blobs: CloudinaryBlobStore

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        return cls(
            settings=settings,
            store=DocumentStore.connect(settings.database_url, settings.database_name),
            blobs=CloudinaryBlobStore(
                settings.cloudinary_cloud_name,
                settings.cloudinary_api_key,
                settings.cloudinary_api_secret,
                settings.cloudinary_folder,
            ),
        )

    def close(self) -> None:
        self.store.close()
