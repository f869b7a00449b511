# batchtrace/qr_generator.py
from io import BytesIO

import qrcode


def batch_qr_png(batch_id: str) -> BytesIO:
    """
    PNG of a QR code whose payload is the bare batch id (what the scanner
    screens read back before calling /hop).
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=3,
    )
    qr.add_data(batch_id)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return buf
