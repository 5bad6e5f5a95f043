import io

import qrcode


def make_qr_bytes(url: str, box_size: int = 10, border: int = 4) -> bytes:
    """Return QR PNG bytes for the provided verification URL."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()
