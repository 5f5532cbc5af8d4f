from __future__ import annotations

from dataclasses import dataclass

from app.pcms.utils import generate_access_code


@dataclass(frozen=True)
class QrCode:
    code: str
    url: str
    image_path: str | None = None


class QrCodeGenerator:
    def generate(self, resource_path: str, label: str) -> QrCode:
        raise NotImplementedError


@dataclass(frozen=True)
class AccessCodeGenerator(QrCodeGenerator):
    """Issues `{base_url}/qr/{code}` links; image rendering is left to the client."""

    base_url: str

    def generate(self, resource_path: str, label: str) -> QrCode:
        code = generate_access_code()
        return QrCode(code=code, url=f"{self.base_url.rstrip('/')}/qr/{code}")


def qr_generator_from_config(config: dict) -> QrCodeGenerator:
    return AccessCodeGenerator(base_url=(config.get("BASE_URL") or "http://localhost:5000"))
