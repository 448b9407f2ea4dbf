from __future__ import annotations

import base64
import io
import json
from types import SimpleNamespace

import pytest
import requests
from PIL import Image

from nfce_tracker.domain.models import CompletedReceipt, FailedReceipt, Item, ReceiptDetails
from nfce_tracker.errors import ExtractionError
from nfce_tracker.extraction.gateway import (
    NO_URL_MESSAGE,
    ReceiptExtractor,
    _scavenge_json,
    encode_photo,
    html_to_text,
)

from conftest import leite_payload

PAGE = """
<html><head><style>body { color: red }</style><script>var x = 1;</script></head>
<body>
  <div id="u20">SUPERMERCADO A LTDA</div>
  <table><tr><td>LEITE INTEGRAL</td><td>Qtde.:2</td><td>Vl. Unit.: 5,00</td></tr></table>
  <p>Valor a pagar R$: 10,00 &amp; troco</p>
</body></html>
"""


class _Session:
    def __init__(self, text: str = PAGE, status_code: int = 200, error: Exception = None) -> None:
        self.headers = {}
        self.text = text
        self.status_code = status_code
        self.error = error
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self


class _Completions:
    def __init__(self, answers):
        self.answers = list(answers)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        answer = self.answers.pop(0)
        if kwargs.get("stream"):
            return [SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=piece))]) for piece in answer]
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=answer))])


def _extractor(answers, session=None):
    completions = _Completions(answers)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    extractor = ReceiptExtractor("sk-test", model="test-model", session=session or _Session(), client=client)
    return extractor, completions


def test_html_to_text_keeps_visible_text_only():
    text = html_to_text(PAGE)
    assert "var x" not in text
    assert "color" not in text
    assert "SUPERMERCADO A LTDA" in text.splitlines()
    assert "Valor a pagar R$: 10,00 & troco" in text


def test_url_to_fields_sends_page_text_and_parses_json():
    session = _Session()
    extractor, completions = _extractor([json.dumps(leite_payload())], session=session)

    details = extractor.url_to_fields("http://nfce/1")
    assert details.store_name == "Mercado A"
    assert details.items[0].unit == "UN"
    assert session.urls == ["http://nfce/1"]
    sent = completions.requests[0]
    assert sent["model"] == "test-model"
    assert sent["response_format"] == {"type": "json_object"}
    assert "LEITE INTEGRAL" in sent["messages"][0]["content"]
    assert "<table>" not in sent["messages"][0]["content"]


def test_url_to_fields_recovers_fenced_json():
    answer = "Here you go:\n```json\n" + json.dumps(leite_payload()) + "\n```"
    extractor, _ = _extractor([answer])
    assert extractor.url_to_fields("http://nfce/1").total_amount == 10.0


def test_url_to_fields_errors():
    extractor, _ = _extractor(["not json at all"])
    with pytest.raises(ExtractionError):
        extractor.url_to_fields("http://nfce/1")

    extractor, _ = _extractor([json.dumps({"items": []})])
    with pytest.raises(ExtractionError, match="storeName"):
        extractor.url_to_fields("http://nfce/1")

    extractor, _ = _extractor([], session=_Session(status_code=404))
    with pytest.raises(ExtractionError, match="404"):
        extractor.url_to_fields("http://nfce/1")

    extractor, _ = _extractor([], session=_Session(error=requests.ConnectionError("down")))
    with pytest.raises(ExtractionError, match="network problem"):
        extractor.url_to_fields("http://nfce/1")


def test_image_to_url():
    extractor, completions = _extractor(["  https://www.fazenda.sp.gov.br/nfce/qrcode?p=123  "])
    assert extractor.image_to_url("aGVsbG8=") == "https://www.fazenda.sp.gov.br/nfce/qrcode?p=123"
    content = completions.requests[0]["messages"][0]["content"]
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="

    extractor, _ = _extractor(["I could not find any URL."])
    with pytest.raises(ExtractionError) as exc:
        extractor.image_to_url("aGVsbG8=")
    assert str(exc.value) == NO_URL_MESSAGE


def test_missing_api_key_fails_on_first_model_call():
    extractor = ReceiptExtractor(None, session=_Session())
    with pytest.raises(ExtractionError, match="OPENAI_API_KEY"):
        extractor.image_to_url("aGVsbG8=")


def test_insights_streams_answer_over_completed_receipts():
    extractor, completions = _extractor([["Você ", "gastou ", "R$ 10,00."]])
    details = ReceiptDetails(
        store_name="Mercado A",
        store_cnpj="1",
        store_address="Rua",
        date="2024-05-10T10:00:00",
        total_amount=10.0,
        items=(Item(name="Leite", quantity=2, unit="UN", unit_price=5.0, total_price=10.0),),
    )
    receipts = [
        CompletedReceipt(id="a", url="http://x/a", payer="Ana", details=details),
        FailedReceipt(id="b", url="http://x/b", error="boom"),
    ]
    answer = "".join(extractor.insights("Quanto gastei?", receipts))
    assert answer == "Você gastou R$ 10,00."
    sent = completions.requests[0]
    assert sent["stream"] is True
    user_message = sent["messages"][1]["content"]
    assert "Quanto gastei?" in user_message
    assert '"payer": "Ana"' in user_message
    assert "boom" not in user_message


def test_scavenge_json():
    assert _scavenge_json('prefix {"a": 1} suffix') == {"a": 1}
    assert _scavenge_json("nothing") is None


def test_encode_photo_downscales_and_flattens(tmp_path):
    path = tmp_path / "receipt.png"
    Image.new("RGBA", (3200, 800), (255, 0, 0, 128)).save(path)

    encoded = encode_photo(str(path), max_side=1600)
    with Image.open(io.BytesIO(base64.b64decode(encoded))) as im:
        assert im.format == "JPEG"
        assert im.mode == "RGB"
        assert im.size == (1600, 400)


def test_encode_photo_rejects_non_images(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("not an image", encoding="utf-8")
    with pytest.raises(ExtractionError):
        encode_photo(str(path))
