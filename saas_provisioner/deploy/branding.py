"""Download publisher logos into the web app sources before publishing."""
import logging
from pathlib import Path
from typing import List, Optional

import requests

from ..console import console
from ..errors import ProvisionerError

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60
SITES = ("CustomerSite", "AdminSite")
# Stock file names the site layouts reference
LOGO_FILES = {
    "png": "contoso-sales.png",
    "ico": "favicon.ico",
}


def download_logos(src_dir: str, logo_png: Optional[str] = None, logo_ico: Optional[str] = None,
                   session: Optional[requests.Session] = None) -> List[Path]:
    """Replace the stock logos of both sites with the publisher's.

    Returns:
        Paths written.

    Raises:
        ProvisionerError: If a logo cannot be downloaded.
    """
    session = session or requests.Session()
    written: List[Path] = []
    for extension, url in (("png", logo_png), ("ico", logo_ico)):
        if not url:
            continue
        console.print(f"[blue]Downloading {extension.upper()} logo from {url}...[/blue]")
        try:
            response = session.get(url, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProvisionerError(f"Failed to download logo {url}: {e}") from e

        for site in SITES:
            target = Path(src_dir) / site / "wwwroot" / LOGO_FILES[extension]
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(response.content)
            written.append(target)
            log.debug("Wrote %s", target)
    return written
