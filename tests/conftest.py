"""
Pytest configuration and fixtures for Image Studio Backend tests.
"""

import os
import shutil
import tempfile
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

# Set test environment variables before importing the app
os.environ["DATABASE_PATH"] = str(Path(tempfile.mkdtemp(prefix="studio_test_db_")) / "studio.db")
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="studio_test_storage_")
os.environ["S3_BUCKET_NAME"] = ""
os.environ["GOOGLE_API_KEY"] = ""
for _model_var in ("GEMINI_MODEL", "CHATGPT_MODEL", "SORA_MODEL"):
    os.environ[_model_var] = ""

from image_studio_backend.backends import (  # noqa: E402
    BackendClient,
    BackendVariant,
    ConnectionCheck,
    GenerateResult,
    ProcessResult,
)
from image_studio_backend.configuration import ActiveConfiguration, BackendSettings  # noqa: E402
from image_studio_backend.service import build_service  # noqa: E402

GATEWAY_URL = "https://gateway.test/v1/chat/completions"
ALL_BACKENDS = ("gemini", "sora", "chatgpt")


def make_png(color=(200, 40, 40), size=(64, 48)) -> bytes:
    """Encode a solid-colour PNG."""
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


def make_configuration(*enabled, name="test"):
    """ActiveConfiguration enabling the given backends (all of them by default)."""
    enabled = enabled or ALL_BACKENDS
    return ActiveConfiguration(
        name=name,
        api_key="sk-test-key-123456",
        base_url=GATEWAY_URL,
        backends={backend_id: BackendSettings(backend_id in enabled, f"{backend_id}-model") for backend_id in ALL_BACKENDS},
        source="test",
    )


class StaticProvider:
    """ConfigurationProvider returning a fixed value and counting lookups."""

    def __init__(self, configuration=None):
        self.configuration = configuration
        self.calls = 0

    def active_configuration(self):
        self.calls += 1
        return self.configuration


class FakeBackendClient(BackendClient):
    """
    In-process backend.

    ``script`` is consumed one entry per call: an exception entry is raised,
    anything else means success.
    """

    def __init__(self, descriptor, config, script, image_bytes):
        super().__init__(descriptor, config)
        self.script = script
        self.image_bytes = image_bytes
        self.calls = []

    def _next(self):
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome

    async def process(self, image_path, options):
        self.calls.append(("process", Path(image_path), options))
        self._next()
        return ProcessResult(
            variants=[
                BackendVariant(self.image_bytes, 0.9, {"prompt": prompt, "variation": index + 1})
                for index, prompt in enumerate(options.prompts)
            ]
        )

    async def generate(self, prompt, style, size):
        self.calls.append(("generate", prompt, style, size))
        self._next()
        return GenerateResult(self.image_bytes, {"prompt": prompt, "size": size})

    async def test_connection(self):
        self.calls.append(("test_connection",))
        try:
            self._next()
        except Exception as exc:  # noqa: BLE001
            return ConnectionCheck(ok=False, error=str(exc))
        return ConnectionCheck(ok=True)


class FakeBackends:
    """Client factory handing out one scripted FakeBackendClient per backend."""

    def __init__(self):
        self.scripts = {backend_id: [] for backend_id in ALL_BACKENDS}
        self.clients = {}
        self.built = 0
        self.image_bytes = make_png()

    def script(self, backend_id, *outcomes):
        self.scripts[backend_id].extend(outcomes)

    def calls(self, backend_id):
        client = self.clients.get(backend_id)
        return client.calls if client else []

    def __call__(self, descriptor, config):
        self.built += 1
        client = FakeBackendClient(descriptor, config, self.scripts[descriptor.id], self.image_bytes)
        self.clients[descriptor.id] = client
        return client


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the import-time directories after all tests."""
    yield {
        "database": os.environ["DATABASE_PATH"],
        "storage": os.environ["STORAGE_ROOT"],
    }
    shutil.rmtree(Path(os.environ["DATABASE_PATH"]).parent, ignore_errors=True)
    shutil.rmtree(os.environ["STORAGE_ROOT"], ignore_errors=True)


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def fake_backends():
    return FakeBackends()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def settings_overrides(tmp_path):
    return {
        "storage": {"root": str(tmp_path / "storage"), "database_path": str(tmp_path / "studio.db")},
        "http": {"rate_limit_per_minute": 1000},
    }


@pytest.fixture
def unconfigured_service(settings_overrides, fake_backends, recording_sleep):
    """Service with no active API configuration."""
    return build_service(settings_overrides, client_factory=fake_backends, sleep=recording_sleep)


@pytest.fixture
def service(unconfigured_service):
    """Service with an active configuration enabling every backend."""
    unconfigured_service.config_store.create("primary", "sk-test-key-123456", GATEWAY_URL, activate=True)
    unconfigured_service.registry.refresh()
    return unconfigured_service


@pytest.fixture
def uploaded_image(service, png_bytes):
    """An uploaded input image registered with the service."""
    return service.upload_image(png_bytes, "product.png")
