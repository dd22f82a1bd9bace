from __future__ import annotations

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M

QR_TARGET_PIXELS = 400
QR_BORDER_MODULES = 2


def build_qr_png(data: str) -> bytes:
    code = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=QR_BORDER_MODULES)
    code.add_data(data)
    code.make(fit=True)
    modules = code.modules_count + 2 * QR_BORDER_MODULES
    code.box_size = max(1, QR_TARGET_PIXELS // modules)
    image = code.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue()


def build_qr_data_url(data: str) -> str:
    encoded = base64.b64encode(build_qr_png(data)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
