"""LLM inference for document extraction, classification and embeddings."""

import base64
import json
import logging
import re
from typing import Optional

import requests
from openai import OpenAI
from pydantic import ValidationError

from ..errors import PipelineError
from ..models import DocumentClassification, DocumentType, EmbeddingResult, ExtractionResult
from ..timeouts import TIMEOUTS

logger = logging.getLogger(__name__)

IMAGE_MIMETYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}


class DocumentExtractionClient:
    """Extracts structured receipt/invoice fields using an OpenAI-compatible vision model."""

    def __init__(self, api_url: str, model_name: str, api_key: str = "not-needed"):
        """Initialize extraction client.

        Args:
            api_url: Base URL for the OpenAI-compatible API (e.g., vLLM endpoint)
            model_name: Vision-capable model to use
            api_key: API key, if the endpoint requires one
        """
        self.client = OpenAI(
            base_url=api_url,
            api_key=api_key,
            timeout=TIMEOUTS.document_processing,
            max_retries=0,  # the job queue owns retries
        )
        self.model_name = model_name
        logger.info(f"Extraction client initialized with model: {model_name}")

    def extract(
        self,
        document_url: str,
        mimetype: str,
        company_name: Optional[str] = None,
    ) -> ExtractionResult:
        """Extract financial fields from a stored document.

        Args:
            document_url: Presigned URL of the document
            mimetype: Document MIME type
            company_name: Name of the receiving company, used to tell the
                vendor apart from the customer

        Returns:
            ExtractionResult: Extracted fields; document_type "other" for
            non-financial documents

        Raises:
            PipelineError: If the model response cannot be parsed
        """
        hint = (
            f"The document was received by {company_name}; the vendor is the other party.\n"
            if company_name else ""
        )
        prompt = f"""Extract the financial details from this document.
{hint}
Decide whether it is an "invoice" (a bill requesting payment), an "expense"
(a receipt for something already paid) or "other" (not a financial document).

Respond with ONLY a JSON object. Do not include thinking process, markdown blocks, or any text before or after the JSON.

Output JSON with these exact fields:
{{
  "document_type": "invoice" or "expense" or "other",
  "vendor_name": "company name or null",
  "amount": number or null,
  "currency": "ISO 4217 code or null",
  "date": "YYYY-MM-DD or null",
  "invoice_number": "string or null",
  "tax_amount": number or null,
  "tax_rate": number or null,
  "tax_type": "vat" or "sales_tax" or "gst" or null,
  "website": "vendor domain or null",
  "title": "short title",
  "summary": "one sentence",
  "tags": ["tag"],
  "language": "ISO 639-1 code or null"
}}"""

        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=[{
                "role": "user",
                "content": [{"type": "text", "text": prompt}, self._document_part(document_url, mimetype)],
            }],
            temperature=0.1,
            max_tokens=1500,
        )
        response_text = (response.choices[0].message.content or "").strip()
        data = self._parse(response_text)

        if data.get("document_type") not in (DocumentType.INVOICE, DocumentType.EXPENSE):
            data["document_type"] = DocumentType.OTHER

        try:
            return ExtractionResult(**data)
        except ValidationError as e:
            raise PipelineError(f"Extraction response did not match schema: {e}") from e

    def classify(self, document_url: str, mimetype: str) -> DocumentClassification:
        """Generate a title, summary and tags for a stored document."""
        prompt = """Describe this document for search.

Respond with ONLY a JSON object with these exact fields:
{
  "title": "short title",
  "summary": "one sentence",
  "tags": ["up to five lowercase tags"]
}"""
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=[{
                "role": "user",
                "content": [{"type": "text", "text": prompt}, self._document_part(document_url, mimetype)],
            }],
            temperature=0.1,
            max_tokens=300,
        )
        data = self._parse((response.choices[0].message.content or "").strip())
        return DocumentClassification(**data)

    def _document_part(self, document_url: str, mimetype: str) -> dict:
        """Message part referencing the document.

        Images are passed by URL. Other formats (PDF) are fetched and inlined
        as base64 file data, since most OpenAI-compatible servers cannot
        dereference document URLs.
        """
        if mimetype in IMAGE_MIMETYPES:
            return {"type": "image_url", "image_url": {"url": document_url}}

        response = requests.get(document_url, timeout=TIMEOUTS.file_transfer)
        response.raise_for_status()
        encoded = base64.b64encode(response.content).decode("ascii")
        return {
            "type": "file",
            "file": {"filename": "document.pdf", "file_data": f"data:{mimetype};base64,{encoded}"},
        }

    def _parse(self, response_text: str) -> dict:
        cleaned = self._extract_json(response_text)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise PipelineError(f"Model returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PipelineError("Model returned a non-object JSON value")
        # Models emit "null" strings and empty strings for missing values
        return {k: v for k, v in data.items() if v not in (None, "", "null")}

    def _extract_json(self, text: str) -> str:
        """Extract JSON from text that may contain markdown code blocks or thinking tags.

        Args:
            text: Response text that may contain JSON

        Returns:
            str: Cleaned JSON string
        """
        # Remove thinking tags if present
        if '<think>' in text or '</think>' in text:
            text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL)
            text = text.strip()

        # Handle markdown code blocks
        if '```' in text:
            json_match = re.search(r'```(?:json)?\s*(\{.*?\})\s*```', text, re.DOTALL)
            if json_match:
                return json_match.group(1)

        # Find the JSON object if it doesn't start with {
        if not text.startswith('{'):
            json_match = re.search(r'\{.*\}', text, re.DOTALL)
            if json_match:
                return json_match.group(0)

        return text


class EmbeddingClient:
    """Text embeddings through an OpenAI-compatible embeddings endpoint."""

    def __init__(self, api_url: str, model_name: str, api_key: str = "not-needed"):
        self.client = OpenAI(
            base_url=api_url,
            api_key=api_key,
            timeout=TIMEOUTS.embedding,
            max_retries=0,
        )
        self.model_name = model_name
        logger.info(f"Embedding client initialized with model: {model_name}")

    def embed(self, text: str) -> EmbeddingResult:
        response = self.client.embeddings.create(model=self.model_name, input=text)
        return EmbeddingResult(vector=list(response.data[0].embedding), model=self.model_name)
