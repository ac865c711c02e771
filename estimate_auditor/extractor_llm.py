"""
Vision-model extraction of facts from photographed documents.

The model is used as a "smart OCR" — it reads the flyer or the estimate and
reports what is printed, with the literal excerpt for every value. It NEVER
diagnoses. We never trust it blindly: every reply is re-validated by the
normalizer, and any failure degrades to an all-null fact set instead of raising.

Design:
  - One request per source (flyer / estimate) so the two never cross-reference
  - Content parts: every image first, then exactly one instruction text
  - JSON mode enforced; code fences stripped defensively before parsing
  - Graceful fallback: no API key, transport error or bad JSON → empty facts
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol, Sequence

from openai import AsyncOpenAI

from .config import DEFAULT_LLM_TIMEOUT_SECONDS, DEFAULT_MODEL
from .exceptions import ExtractionError
from .models import (
    EVIDENCED_FIELD_NAMES,
    FIELD_LABELS,
    EvidencedField,
    ExtractedFacts,
    ExtractionSource,
    ImageInput,
    OtherItem,
)
from .normalizer import parse_amount

logger = logging.getLogger(__name__)


# ─── Capability Interface ────────────────────────────────────────────


class FactExtractor(Protocol):
    """What the pipeline needs from a vision model. Implementations must not raise."""

    async def extract(
        self, images: Sequence[ImageInput], source: ExtractionSource
    ) -> ExtractedFacts: ...

    async def verify_field(
        self, images: Sequence[ImageInput], field_name: str
    ) -> EvidencedField: ...


# ─── Prompts ─────────────────────────────────────────────────────────

ABBREVIATION_DICTIONARY = """\
【省略表記辞書】以下の表記を正しく認識してください：

■ 礼金
- "礼1" / "礼金1" → 礼金1ヶ月
- "礼0" / "礼なし" / "礼金なし" / "なし" → 礼金0ヶ月
- "-" / "ー" / "未定" / "相談" → null（不明）

■ 敷金
- "敷1" / "敷金1" → 敷金1ヶ月
- "敷0" / "敷なし" / "敷金なし" → 敷金0ヶ月
- "-" / "ー" / "未定" / "相談" → null（不明）

■ 敷礼複合
- "敷礼 0/1" → 敷金0ヶ月、礼金1ヶ月
- "0/1" → 敷金0ヶ月、礼金1ヶ月

■ 仲介手数料
- "仲介無料" / "手数料無料" → 0ヶ月
- "0.5" / "0.5ヶ月" / "半月" → 0.5ヶ月
- "1" / "1ヶ月" → 1ヶ月

■ 0の判定ルール（最重要）
- "0" / "0円" / "なし" / "無し" / "無料" という明確な記載がある場合のみ0
- 記載がない / 読み取れない → 必ずnull（0にしてはいけない）
- 曖昧な場合 → null（0にしてはいけない）
"""

EVIDENCE_RULES = """\
【最重要ルール】
1. evidence_text（根拠テキスト＝画像に印字された原文）がない項目は、valueを必ずnullにしてください
2. 「記載なし」「読み取れない」「不明」の場合は、valueをnullにしてください（0にしてはいけない）
3. valueを0にできるのは、"礼0" / "なし" / "0円" / "無料" など0を示す明確な記載がある場合のみです
4. 曖昧な場合はnullを選択してください（安全側に倒す）
"""

_FIELD_SHAPE = (
    '{"value": 数値/文字列/null, "evidence_text": "原文" または null, '
    '"confidence": 0〜1, "page_or_image_index": 画像番号(0始まり)}'
)

OUTPUT_SHAPE = f"""\
【出力形式】
以下のキーを持つJSONオブジェクトのみを出力してください。Markdownは使用しないでください。
各項目は {_FIELD_SHAPE} の形です。
{{
  "property_name": 項目, "room_number": 項目,
  "rent": 項目(円), "management_fee": 項目(円),
  "deposit_months": 項目(月数), "key_money_months": 項目(月数),
  "brokerage_fee": 項目(円), "brokerage_fee_months": 項目(月数),
  "brokerage_fee_tax_included": 項目(true/false),
  "administrative_fee": 項目(円), "guarantee_fee": 項目(円),
  "fire_insurance": 項目(円), "support_service": 項目(円),
  "key_exchange": 項目(円), "cleaning_fee": 項目(円), "renewal_fee": 項目(円),
  "free_rent_months": 項目(月数),
  "contract_start_date": 項目(YYYY-MM-DD), "move_in_date": 項目(YYYY-MM-DD),
  "other_items": [{{"name": "項目名", "value": 項目(円)}}],
  "total_items_found": 読み取れた項目数
}}
"""

FLYER_INSTRUCTIONS = f"""\
あなたは不動産の募集図面（マイソク）から情報を正確に抽出する専門家です。

【役割】
画像から「事実」のみを抽出してください。診断や提案は一切しないでください。
各項目について、画像に記載されている原文を必ずevidence_textとして記録してください。

{EVIDENCE_RULES}
{ABBREVIATION_DICTIONARY}
【抽出対象項目】
物件名、号室、賃料、管理費/共益費、敷金（月数）、礼金（月数）、仲介手数料（月数または円）、
事務手数料、保証会社料、火災保険、24時間サポート/〇〇クラブ等、鍵交換、
クリーニング/退去時費用、更新料、フリーレント（月数）、契約開始日、入居可能日、その他の費用項目

【読み取り手順】
1. 画像全体を隅々まで確認（備考欄、特記事項、小さな文字を含む）
2. 表形式、箇条書き、文章形式など、あらゆる形式を読み取る
3. 各項目の原文をそのままevidence_textに記録し、confidenceを設定する

{OUTPUT_SHAPE}"""

ESTIMATE_INSTRUCTIONS = f"""\
あなたは不動産の初期費用見積書から情報を正確に抽出する専門家です。

【役割】
画像から「事実」のみを抽出してください。診断や提案は一切しないでください。
各項目について、画像に記載されている原文と金額を必ず記録してください。

{EVIDENCE_RULES}
5. 見積書に記載されている金額は、そのままの数値で記録してください（0円と誤認しない）
6. 金額と項目名を正確に対応させてください

{ABBREVIATION_DICTIONARY}
【鍵関連の表記バリエーション】すべて key_exchange として扱ってください：
鍵交換、鍵代、鍵費用、鍵設定費用、カードキー設定費用、鍵交換費、鍵交換代、
オートロック設定、セキュリティ設定、キー設定、キー代、カギ交換、カギ代

【サポート関連の表記バリエーション】すべて support_service として扱ってください：
24時間サポート、24hサポート、〇〇サポート、〇〇クラブ、〇〇サービス、
プレミアデスク、プレミアサポート、メンテナンスサポート、生活サポート、入居サポート

【抽出対象項目】
物件名、号室、賃料、管理費/共益費、敷金、礼金、仲介手数料、事務手数料、保証会社料、
火災保険、24時間サポート等、鍵交換、クリーニング、更新料、消毒/抗菌/害虫駆除等、
その他の費用項目すべて（other_items に項目名と金額で記録）

{OUTPUT_SHAPE}"""

VERIFICATION_INSTRUCTIONS = f"""\
あなたは不動産書類の検証専門家です。

【タスク】
以下の項目について、画像を再度確認し、正確な値を抽出してください。
対象項目: {{field_name}}（{{field_label}}）

【最重要ルール】
1. 必ずevidence_text（原文）を記録してください
2. 読み取れない場合はnullにしてください（0にしてはいけない）
3. 0にできるのは、"0" / "なし" / "無料" など明確な記載がある場合のみ

{ABBREVIATION_DICTIONARY}
【出力形式】JSONオブジェクトのみ。Markdownは使用しないでください。
{{{{
  "field_name": "{{field_name}}",
  "value": 数値または null,
  "evidence_text": "画像から抽出した原文" または null,
  "confidence": 0〜1,
  "page_or_image_index": 0,
  "verification_note": "確認内容の説明"
}}}}
"""

_INSTRUCTIONS: dict[ExtractionSource, str] = {
    ExtractionSource.FLYER: FLYER_INSTRUCTIONS,
    ExtractionSource.ESTIMATE: ESTIMATE_INSTRUCTIONS,
}


def build_instruction(source: ExtractionSource) -> str:
    return _INSTRUCTIONS[source]


def build_verification_instruction(field_name: str) -> str:
    return VERIFICATION_INSTRUCTIONS.format(
        field_name=field_name, field_label=FIELD_LABELS.get(field_name, field_name)
    )


def build_content(images: Sequence[ImageInput], instruction: str) -> list[dict[str, Any]]:
    """Multimodal content parts: all images in order, then one text part."""
    parts: list[dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": image.to_data_url()}}
        for image in images
    ]
    parts.append({"type": "text", "text": instruction})
    return parts


# ─── Response Parsing ────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?")

NUMERIC_FIELDS: frozenset[str] = frozenset({
    "rent", "management_fee", "deposit_months", "key_money_months",
    "brokerage_fee", "brokerage_fee_months", "administrative_fee",
    "guarantee_fee", "fire_insurance", "support_service", "key_exchange",
    "cleaning_fee", "renewal_fee", "free_rent_months",
})
BOOLEAN_FIELDS: frozenset[str] = frozenset({"brokerage_fee_tax_included"})


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _load_json_object(text: str) -> dict[str, Any]:
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise ExtractionError(
            f"Model reply is not valid JSON: {e}", {"reply_preview": text[:200]}
        ) from e
    if not isinstance(data, dict):
        raise ExtractionError(
            "Model reply is not a JSON object", {"type": type(data).__name__}
        )
    return data


def parse_facts_response(text: str, source: ExtractionSource) -> ExtractedFacts:
    """Turn a model reply into ExtractedFacts. Raises ExtractionError on bad shape."""
    data = _load_json_object(text)

    known = [name for name in EVIDENCED_FIELD_NAMES if name in data]
    if not known and "other_items" not in data:
        raise ExtractionError(
            "Model reply contains none of the expected fields",
            {"keys": sorted(data)[:20]},
        )

    fields = {
        name: _to_field(name, data.get(name), source) for name in EVIDENCED_FIELD_NAMES
    }

    raw_items = data.get("other_items") or []
    if not isinstance(raw_items, list):
        logger.warning("Ignoring non-list other_items from %s reply", source.value)
        raw_items = []
    other_items = [
        OtherItem(name=str(item["name"]).strip(), value=_to_field("other_item", item.get("value"), source))
        for item in raw_items
        if isinstance(item, dict) and isinstance(item.get("name"), str) and item["name"].strip()
    ]

    total = data.get("total_items_found")
    if isinstance(total, bool) or not isinstance(total, int):
        total = sum(1 for f in fields.values() if f.has_value) + len(other_items)

    return ExtractedFacts(source=source, other_items=other_items, total_items_found=total, **fields)


def parse_field_response(text: str, field_name: str) -> EvidencedField:
    """Turn a single-field verification reply into a flyer-sourced field."""
    data = _load_json_object(text)
    payload = dict(data)
    payload.setdefault("extraction_note", data.get("verification_note"))
    return _to_field(field_name, payload, ExtractionSource.FLYER)


def _to_field(name: str, payload: Any, source: ExtractionSource) -> EvidencedField:
    if not isinstance(payload, dict):
        return EvidencedField.empty(source)
    evidence = payload.get("evidence_text")
    note = payload.get("extraction_note")
    return EvidencedField(
        value=_coerce_value(name, payload.get("value")),
        evidence_text=None if evidence is None else str(evidence),
        confidence=_safe_float(payload.get("confidence")),
        source=source,
        image_index=_safe_int(payload.get("page_or_image_index", payload.get("image_index"))),
        note=None if note is None else str(note),
    )


# ─── Safe Type Converters ────────────────────────────────────────────


def _coerce_value(name: str, value: object) -> bool | int | float | str | None:
    """Coerce a reported value to the field's type. Returns None on failure."""
    if value is None:
        return None
    if name in BOOLEAN_FIELDS:
        return value if isinstance(value, bool) else None
    if name in NUMERIC_FIELDS or name == "other_item":
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return value
        return parse_amount(str(value))
    text = str(value).strip()
    return text or None


def _safe_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


# ─── OpenAI Implementation ───────────────────────────────────────────


class OpenAIVisionExtractor:
    """FactExtractor backed by an OpenAI vision-capable chat model.

    Usage:
        extractor = OpenAIVisionExtractor(api_key="sk-...", model="gpt-5")
        facts = await extractor.extract(images, ExtractionSource.FLYER)
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_LLM_TIMEOUT_SECONDS,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None

    async def _complete(self, images: Sequence[ImageInput], instruction: str) -> str:
        assert self._client is not None
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": build_content(images, instruction)}],
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        if not content:
            raise ExtractionError("Model returned empty content")
        return content

    async def extract(
        self, images: Sequence[ImageInput], source: ExtractionSource
    ) -> ExtractedFacts:
        """Extract one document's facts. Returns empty facts on any failure."""
        if not images:
            logger.info("No %s images supplied — skipping extraction", source.value)
            return ExtractedFacts.empty(source)
        if not self.available:
            logger.info("No OPENAI_API_KEY set — %s extraction degraded to nulls", source.value)
            return ExtractedFacts.empty(source)

        logger.info("Extracting %s facts from %d image(s)", source.value, len(images))
        try:
            reply = await self._complete(images, build_instruction(source))
            facts = parse_facts_response(reply, source)
        except ExtractionError as e:
            logger.warning("%s extraction unusable (%s): %s", source.value, e.code, e)
            return ExtractedFacts.empty(source)
        except Exception as e:
            logger.error("%s extraction failed: %s", source.value, e)
            return ExtractedFacts.empty(source)

        logger.info(
            "%s extraction succeeded: %d item(s) found", source.value, facts.total_items_found
        )
        return facts

    async def verify_field(
        self, images: Sequence[ImageInput], field_name: str
    ) -> EvidencedField:
        """Re-read a single field from the given images. Returns a null field on failure."""
        if not images or not self.available:
            return EvidencedField.empty(ExtractionSource.FLYER, note="verification not performed")

        logger.info("Re-verifying %s against %d image(s)", field_name, len(images))
        try:
            reply = await self._complete(images, build_verification_instruction(field_name))
            field = parse_field_response(reply, field_name)
        except Exception as e:
            logger.error("Verification of %s failed: %s", field_name, e)
            return EvidencedField.empty(
                ExtractionSource.FLYER, note=f"verification error: {e}"
            )

        logger.info(
            "Verified %s: value=%r evidence=%r confidence=%.2f",
            field_name, field.value, field.evidence_text, field.confidence,
        )
        return field
