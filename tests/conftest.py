import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from context import AppContext
from database import DocumentStore
from main import create_app
from storage import StoredImage


class FakeBlobStore:
    """Records uploads and deletions instead of talking to Cloudinary."""

    def __init__(self):
        self.uploaded = []
        self.destroyed = []
        self.fail_destroy = False
        self._counter = 0

    def upload(self, upload):
        self._counter += 1
        upload.file.read()
        public_id = f"smarthome-products/{self._counter}-{upload.filename.split('.')[0]}"
        self.uploaded.append(public_id)
        return StoredImage(url=f"https://res.cloudinary.test/{public_id}.png", public_id=public_id)

    def destroy(self, public_id):
        if self.fail_destroy:
            raise RuntimeError("cloudinary unreachable")
        self.destroyed.append(public_id)


def image(name="plug.png", content_type="image/png", data=b"\x89PNG fake image"):
    return (name, data, content_type)


@pytest.fixture
def store():
    return DocumentStore(mongomock.MongoClient()["smarthome_test"])


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def client(store, blobs):
    app = create_app(AppContext(settings=Settings(), store=store, blobs=blobs))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def create_product(client):
    def _create(other_photos=0, **fields):
        data = {"name": "Smart Plug", "price": "19.99", **fields}
        files = [("mainImage", image())]
        files += [("otherPhotos", image(f"photo{i}.jpg", "image/jpeg")) for i in range(other_photos)]
        response = client.post("/products/upload", data=data, files=files)
        assert response.status_code == 201, response.text
        return response.json()["product"]
    return _create
