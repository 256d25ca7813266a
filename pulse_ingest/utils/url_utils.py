import re
from urllib.parse import urlparse


IMAGE_EXTENSION_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif|webp|svg|bmp|tiff)(\?|$)', re.IGNORECASE)

IMAGE_HOSTS = [
    'images.unsplash.com',
    'cdn.pixabay.com',
    'images.pexels.com',
    'i.imgur.com',
    'media.gettyimages.com',
    'cloudinary.com',
    'amazonaws.com',
    'googleusercontent.com',
]


def extract_domain(url: str) -> str:
    parsed = urlparse(url)
    return parsed.netloc


def source_id_for(url: str) -> str:
    """Hostname without a leading www., used as the source identifier."""
    host = extract_domain(url).lower()
    return host[4:] if host.startswith("www.") else host


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def has_url_scheme(url: str) -> bool:
    if not url:
        return False
    return url.startswith(('http://', 'https://'))


def is_image_url(url: str) -> bool:
    if not has_url_scheme(url):
        return False
    if IMAGE_EXTENSION_PATTERN.search(url):
        return True
    hostname = extract_domain(url).lower()
    return (
        any(host in hostname for host in IMAGE_HOSTS)
        or 'image' in hostname
        or 'photo' in hostname
        or 'media' in hostname
    )
