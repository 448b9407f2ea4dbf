from __future__ import annotations

import base64
import html
import io
import json
import re
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx
import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI
from PIL import Image, ImageOps, UnidentifiedImageError

from ..config import DEFAULT_OPENAI_MODEL
from ..domain.codec import details_from_payload, details_to_dict
from ..domain.models import STATUS_COMPLETED, Receipt, ReceiptDetails
from ..errors import ExtractionError, ValidationError
from ..logging import get_logger
from .prompts import IMAGE_URL_PROMPT, insights_system_prompt, insights_user_prompt, receipt_fields_prompt

LOG = get_logger("extraction")

NO_URL_MESSAGE = "No valid URL was found in the image."

# Keeps the prompt within a sane token budget for very large portal pages.
MAX_PAGE_CHARS = 60_000
PHOTO_MAX_SIDE = 1600

_DROP_BLOCKS = re.compile(r"<(script|style|noscript|svg)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAGS = re.compile(r"</?(?:tr|br|p|div|li|h\d|table|tbody|thead)\b[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_SPACES = re.compile(r"[ \t\r\f\v]+")


def html_to_text(markup: str) -> str:
    """Reduce an NFC-e HTML page to its visible text, one block per line."""
    text = _DROP_BLOCKS.sub(" ", markup or "")
    text = _BLOCK_TAGS.sub("\n", text)
    text = _ANY_TAG.sub(" ", text)
    text = html.unescape(text)
    lines = (_SPACES.sub(" ", ln).strip() for ln in text.splitlines())
    return "\n".join(ln for ln in lines if ln)


def _scavenge_json(s: str) -> Optional[Dict[str, Any]]:
    if not s:
        return None
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        s = fenced.group(1)
    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    for j in range(end, start, -1):
        try:
            return json.loads(s[start : j + 1])
        except json.JSONDecodeError:
            continue
    return None


def encode_photo(path: str, *, max_side: int = PHOTO_MAX_SIDE, quality: int = 85) -> str:
    """Load a receipt photo and return it as base64 JPEG.

    EXIF orientation is applied, the image is downscaled so its longest side
    is at most `max_side`, and alpha/palette modes are flattened to RGB.
    """
    try:
        with Image.open(path) as im:
            im = ImageOps.exif_transpose(im)
            if im.mode != "RGB":
                im = im.convert("RGB")
            im.thumbnail((max_side, max_side))
            buf = io.BytesIO()
            im.save(buf, format="JPEG", quality=quality, optimize=True)
    except (OSError, UnidentifiedImageError) as e:
        raise ExtractionError(f"Could not read image {path}: {e}") from e
    return base64.b64encode(buf.getvalue()).decode("ascii")


class ReceiptExtractor:
    """Turns NFC-e URLs and receipt photos into structured data via an OpenAI model.

    The OpenAI client is created on first use so the tracker can be wired
    (and list/analytics commands run) without an API key.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
        client: Any = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = int(timeout)
        self.s = session or requests.Session()
        self.s.headers.update({"User-Agent": "Mozilla/5.0 (nfce-tracker)"})
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise ExtractionError("OPENAI_API_KEY missing in env/.env; cannot run extraction")
            http_client = httpx.Client(
                timeout=httpx.Timeout(connect=10.0, read=120.0, write=30.0, pool=10.0),
            )
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                http_client=http_client,
                max_retries=0,
            )
        return self._client

    # ---------- page fetch ----------
    def fetch_page(self, url: str) -> str:
        try:
            r = self.s.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExtractionError(
                f"Failed to fetch the receipt page. It may be a network problem or the site may be offline ({e})."
            ) from e
        if r.status_code >= 400:
            raise ExtractionError(f"Failed to fetch the receipt page. The server answered with status {r.status_code}.")
        text = html_to_text(r.text)
        if len(text) > MAX_PAGE_CHARS:
            LOG.warning(f"Receipt page text truncated from {len(text)} to {MAX_PAGE_CHARS} chars")
            text = text[:MAX_PAGE_CHARS]
        return text

    # ---------- model calls ----------
    def _chat(self, messages: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": 0}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        t0 = time.perf_counter()
        try:
            resp = self.client.chat.completions.create(**kwargs)
        except (APIConnectionError, APITimeoutError) as e:
            raise ExtractionError(f"Network/timeout while calling the AI model: {e}") from e
        except APIStatusError as e:
            raise ExtractionError(f"AI model returned HTTP {getattr(e, 'status_code', '?')}") from e
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise ExtractionError("AI model returned no choices")
        content = getattr(choices[0].message, "content", None) or ""
        LOG.info(f"Model '{self.model}' answered in {time.perf_counter() - t0:.2f}s ({len(content)} chars)")
        return content

    def url_to_fields(self, url: str) -> ReceiptDetails:
        """Fetch the NFC-e page behind `url` and extract its receipt fields."""
        LOG.info(f"Extracting receipt fields from {url}")
        page = self.fetch_page(url)
        text = self._chat(
            [{"role": "user", "content": receipt_fields_prompt(page)}],
            json_mode=True,
        )
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            LOG.debug(f"JSON parse failed; attempting fallback (first 500 chars: {text[:500]!r})")
            payload = _scavenge_json(text)
        if payload is None:
            raise ExtractionError("AI processing error: the model did not return JSON")
        try:
            details = details_from_payload(payload)
        except ValidationError as e:
            raise ExtractionError(f"AI processing error: {e}") from e
        LOG.info(f"Extracted {len(details.items)} item(s) from {details.store_name!r}")
        return details

    def image_to_url(self, photo_b64: str) -> str:
        """Read the consultation URL printed on a receipt photo."""
        if not photo_b64:
            raise ExtractionError(NO_URL_MESSAGE)
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": IMAGE_URL_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{photo_b64}"}},
                ],
            }
        ]
        url = self._chat(messages).strip().strip("`").strip()
        if not url or not url.startswith("http"):
            raise ExtractionError(NO_URL_MESSAGE)
        return url

    def insights(self, question: str, receipts: Iterable[Receipt]) -> Iterator[str]:
        """Stream a markdown answer about the completed receipts."""
        data = []
        for r in receipts:
            if r.status != STATUS_COMPLETED or r.details is None:
                continue
            d = details_to_dict(r.details)
            data.append(
                {
                    "storeName": d["storeName"],
                    "date": d["date"],
                    "totalAmount": d["totalAmount"],
                    "payer": r.payer,
                    "items": d["items"],
                }
            )
        messages = [
            {"role": "system", "content": insights_system_prompt()},
            {"role": "user", "content": insights_user_prompt(question, json.dumps(data, ensure_ascii=False, indent=2))},
        ]
        try:
            stream = self.client.chat.completions.create(model=self.model, messages=messages, stream=True)
            for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                piece = getattr(choices[0].delta, "content", None)
                if piece:
                    yield piece
        except (APIConnectionError, APITimeoutError, APIStatusError) as e:
            raise ExtractionError(f"Failed to get insights from the AI: {e}") from e
