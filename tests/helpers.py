import io

from PIL import Image


def png_bytes(size=(400, 300), color=(200, 30, 30), mode="RGB") -> bytes:
    bio = io.BytesIO()
    Image.new(mode, size, color).save(bio, format="PNG")
    return bio.getvalue()
