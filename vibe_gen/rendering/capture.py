"""
Screenshot capture of source screens using Playwright, with Pillow-based
compression to keep images within provider payload budgets.
"""

import base64
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional

from PIL import Image
from playwright.async_api import async_playwright


MAX_SCREENSHOT_BYTES = 400 * 1024
VIEWPORT_WIDTH = 1280
VIEWPORT_HEIGHT = 800


def compress_image(
    image_bytes: bytes,
    max_bytes: int = MAX_SCREENSHOT_BYTES,
    quality: int = 80,
    min_quality: int = 30,
) -> bytes:
    """
    Re-encode an image as JPEG until it fits within max_bytes.

    Quality is stepped down first; if the floor is reached the image is
    downscaled and the quality search starts again.

    Args:
        image_bytes: Encoded source image (any format Pillow reads).
        max_bytes: Size budget for the output.
        quality: Starting JPEG quality.
        min_quality: Lowest quality tried before downscaling.

    Returns:
        JPEG bytes no larger than max_bytes (or the smallest achievable).
    """
    image = Image.open(BytesIO(image_bytes)).convert("RGB")

    while True:
        current = quality
        while current >= min_quality:
            buffer = BytesIO()
            image.save(buffer, "JPEG", quality=current, optimize=True)
            data = buffer.getvalue()
            if len(data) <= max_bytes:
                return data
            current -= 10

        width, height = image.size
        if width <= 64 or height <= 64:
            return data
        image = image.resize((int(width * 0.8), int(height * 0.8)), Image.Resampling.LANCZOS)


def to_data_url(image_bytes: bytes, media_type: str = "image/jpeg") -> str:
    return f"data:{media_type};base64,{base64.b64encode(image_bytes).decode('utf-8')}"


class ScreenCapturer(ABC):
    """Produces a screenshot for an HTML document."""

    @abstractmethod
    async def capture(self, html: str) -> Optional[str]:
        """Return a base64 data URL of the rendered document, or None."""


class PlaywrightScreenCapturer(ScreenCapturer):
    """Renders HTML in a headless browser and captures the first viewport."""

    def __init__(
        self,
        headless: bool = True,
        browser_type: str = "chromium",
        width: int = VIEWPORT_WIDTH,
        height: int = VIEWPORT_HEIGHT,
        max_bytes: int = MAX_SCREENSHOT_BYTES,
        wait_time: int = 500,
    ):
        """
        Initialize the capturer.

        Args:
            headless: Whether to run browser in headless mode.
            browser_type: Browser to use (chromium, firefox, webkit).
            width: Viewport width in pixels.
            height: Viewport height in pixels.
            max_bytes: Size budget of the compressed screenshot.
            wait_time: Time to wait for rendering (ms).
        """
        self.headless = headless
        self.browser_type = browser_type
        self.width = width
        self.height = height
        self.max_bytes = max_bytes
        self.wait_time = wait_time

    async def capture_bytes(self, html: str) -> bytes:
        async with async_playwright() as p:
            if self.browser_type == "chromium":
                browser = await p.chromium.launch(headless=self.headless)
            elif self.browser_type == "firefox":
                browser = await p.firefox.launch(headless=self.headless)
            elif self.browser_type == "webkit":
                browser = await p.webkit.launch(headless=self.headless)
            else:
                raise ValueError(f"Unsupported browser: {self.browser_type}")

            try:
                context = await browser.new_context(
                    viewport={"width": self.width, "height": self.height},
                    device_scale_factor=1,
                )
                page = await context.new_page()
                await page.set_content(html, wait_until="networkidle")
                await page.wait_for_timeout(self.wait_time)
                image = await page.screenshot(type="jpeg", quality=80, full_page=False)
                await context.close()
            finally:
                await browser.close()
        return image

    async def capture(self, html: str) -> Optional[str]:
        image = await self.capture_bytes(html)
        return to_data_url(compress_image(image, max_bytes=self.max_bytes))
