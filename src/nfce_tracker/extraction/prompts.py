from datetime import date
from typing import Optional

CATEGORIES = (
    "Alimentos",
    "Bebidas",
    "Laticínios",
    "Frios e Embutidos",
    "Hortifruti",
    "Padaria",
    "Açougue",
    "Limpeza",
    "Higiene Pessoal",
    "Casa e Decoração",
    "Pet",
    "Outros",
)


def receipt_fields_prompt(page_text: str) -> str:
    categories = ", ".join(f"'{c}'" for c in CATEGORIES)
    return f"""
## Task
Below is the text content of a Brazilian NFC-e (Nota Fiscal de Consumidor Eletrônica) consultation page.
Extract as much data as possible. Focus on textual content and tables.

## Page content
```
{page_text}
```

## Output (strict)
Return ONLY one JSON object (no code fences, no commentary) with keys:
- storeName: string, the establishment name
- storeCnpj: string, the establishment CNPJ
- storeAddress: string, full address (street, number, district, city, state)
- date: string, purchase date and time as ISO 8601 (YYYY-MM-DDTHH:mm:ss)
- totalAmount: number, the receipt total
- items: array of objects, one per purchased line:
  - name: product description
  - quantity: number (e.g. 1, 0.5, 1.253)
  - unit: unit code ('UN', 'KG', 'L', 'M', 'CX'); assume 'UN' when not explicit
  - unitPrice: number, price per unit of measure
  - totalPrice: number, total price of the line
  - category: one of {categories}

If a value cannot be found use an appropriate empty default ("" , 0 or []).
""".strip()


IMAGE_URL_PROMPT = (
    "Analyze the image of a Brazilian NFC-e receipt and extract ONLY the "
    "consultation URL, usually found near the QR code or at the bottom of the "
    "receipt. Reply with the URL text alone: no headers, explanations or formatting."
)


def insights_system_prompt(today: Optional[date] = None) -> str:
    today = today or date.today()
    return (
        "You are a friendly and insightful personal finance assistant. Analyze the "
        "user's spending data, given as a JSON array of receipts, and answer their "
        "question. Each receipt has a detailed item list; when comparing item prices "
        "pay attention to 'unitPrice' and 'unit'. Give clear, useful answers formatted "
        f"in markdown. Use the BRL currency (R$). Today is {today.strftime('%d/%m/%Y')}."
    )


def insights_user_prompt(question: str, receipts_json: str) -> str:
    return f"""
Here is my spending data:
```json
{receipts_json}
```
My question is: "{question}"
""".strip()
