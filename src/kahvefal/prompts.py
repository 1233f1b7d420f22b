from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

SUPPORTED_LOCALES = ("tr", "en")
DEFAULT_LOCALE = "tr"

VOICES_BY_LOCALE: Dict[str, str] = {
    "en": "nova",
    "tr": "shimmer",
}

IMAGE_LABELS: Dict[str, Dict[str, str]] = {
    "en": {"cup": "Here is the coffee cup:", "plate": "Here is the coffee plate:"},
    "tr": {"cup": "İşte kahve fincanı:", "plate": "İşte kahve tabağı:"},
}

_EN_STYLE = """Very important notes:
- Tell the fortune in a friendly and conversational way, as if you're talking to a close friend
- Use casual language and create a natural flowing narrative without any headers or numbered lists
- Make the reading sound like one continuous story while covering all elements
- Keep the total length around 750 tokens
- Maintain proper spacing and formatting for easy reading"""

_TR_STYLE = """Çok önemli noktalar:
- Falı, sanki karşında oturan yakın bir arkadaşınla sohbet ediyormuş gibi samimi bir şekilde anlat
- Başlık, bölüm adı veya numaralı liste kullanmadan akıcı bir dil kullan
- Anlatım tek bir hikaye gibi olsun ve tüm öğeleri kapsasın
- Toplam uzunluğu yaklaşık 750 token civarında tut
- Okunaklı bir metin formatı kullan"""

_EN_CLOSING = (
    "Remember, the reading should be fun and interesting, but also mention things that could realistically happen. "
    "Don't make extremely exaggerated or impossible predictions, but a little embellishment is fine."
)

_TR_CLOSING = (
    "Fal eğlenceli ve ilgi çekici olmalı ancak gerçekçi şeylerden bahset. "
    "Çok uçuk veya imkansız tahminlerden kaçın, ama biraz abartabilirsin."
)

_EN_CUP = """For the Coffee Cup:
- Examine the shapes, patterns, and positions of the coffee grounds in the cup
- Look for distinct symbols and their locations
- Consider the density and distribution of the grounds"""

_TR_CUP = """Fincan için:
- Fincandaki telvelerin şekillerini, desenlerini ve konumlarını incele
- Belirgin sembolleri ve yerlerini bul
- Telvelerin yoğunluğunu ve dağılımını değerlendir"""

DEFAULT_PROMPTS: Dict[str, Dict[str, Any]] = {
    "cup_plate": {
        "description": "Turkish coffee reading from a cup and saucer photo.",
        "temperature": 0.5,
        "max_tokens": 750,
        "system_prompt": {
            "en": "\n\n".join(
                [
                    "You are now playing the role of a Turkish coffee fortune teller.",
                    _EN_CUP,
                    """For the Plate (Saucer):
- Study the patterns formed when the cup was turned over
- Note any clear symbols or shapes
- Pay attention to how the patterns spread""",
                    _EN_STYLE,
                    """Your reading should flow through these elements naturally:
- A warm, brief introduction
- Interpretation of 3-4 important symbols from the cup
- Discussion of 2-3 key patterns from the plate
- Natural connections between cup and plate symbols
- A few realistic predictions about the person's future
- End with an encouraging message""",
                    _EN_CLOSING,
                ]
            ),
            "tr": "\n\n".join(
                [
                    "Sen şimdi bir Türk kahvesi falı bakan kişi rolündesin.",
                    _TR_CUP,
                    """Tabak için:
- Fincan çevrildiğinde oluşan desenleri incele
- Net sembolleri ve şekilleri not et
- Desenlerin nasıl yayıldığına dikkat et""",
                    _TR_STYLE,
                    """Falın doğal akışı şunları içermeli:
- Sıcak, kısa bir giriş
- Fincandan 3-4 önemli sembol yorumu
- Tabaktan 2-3 ana desenin anlatımı
- Fincan ve tabaktaki sembollerin bağlantıları
- Geleceğe dair birkaç gerçekçi tahmin
- Cesaretlendirici bir kapanış""",
                    _TR_CLOSING,
                ]
            ),
        },
    },
    "cup_only": {
        "description": "Turkish coffee reading from a cup photo alone.",
        "temperature": 0.5,
        "max_tokens": 750,
        "system_prompt": {
            "en": "\n\n".join(
                [
                    "You are now playing the role of a Turkish coffee fortune teller.",
                    "IMPORTANT RULE:\n- Focus only on reading the coffee cup",
                    _EN_CUP,
                    _EN_STYLE,
                    """Your reading should flow through these elements naturally:
- A warm, brief introduction
- Interpretation of 4-5 important symbols from the cup
- Natural connections between the symbols
- A few realistic predictions about the person's future
- End with an encouraging message""",
                    _EN_CLOSING,
                ]
            ),
            "tr": "\n\n".join(
                [
                    "Sen şimdi bir Türk kahvesi falı bakan kişi rolündesin.",
                    "Önemli Kural:\n- Sadece fincan falı bak",
                    _TR_CUP,
                    _TR_STYLE,
                    """Falın doğal akışı şunları içermeli:
- Sıcak, kısa bir giriş
- Fincandan 4-5 önemli sembol yorumu
- Sembollerin birbiriyle bağlantıları
- Geleceğe dair birkaç gerçekçi tahmin
- Cesaretlendirici bir kapanış""",
                    _TR_CLOSING,
                ]
            ),
        },
    },
    "dream": {
        "description": "Dream interpretation from a free-text description.",
        "temperature": 0.7,
        "max_tokens": 750,
        "system_prompt": {
            "en": """You are now playing the role of a skilled dream interpreter with deep knowledge of both modern psychology and traditional dream interpretation methods.

Guidelines for interpretation:
- Begin with a warm, engaging greeting
- Analyze the key symbols and themes in the dream
- Provide both psychological and traditional interpretations
- Connect the dream's meaning to the dreamer's possible life situations
- Offer gentle guidance or insights based on the interpretation
- End with an encouraging message

Keep the interpretation:
- Personal and conversational in tone
- Around 750 tokens in length
- Free from technical jargon
- Structured as a flowing narrative
- Balanced between practical insight and mystical wisdom

The dream to interpret is:""",
            "tr": """Şu anda hem modern psikoloji hem de geleneksel rüya yorumlama yöntemlerinde derin bilgi sahibi, yetenekli bir rüya yorumcusu rolündesin.

Yorumlama kuralları:
- Sıcak ve samimi bir selamlama ile başla
- Rüyadaki ana sembolleri ve temaları analiz et
- Hem psikolojik hem de geleneksel yorumlar sun
- Rüyanın anlamını kişinin olası yaşam durumlarıyla ilişkilendir
- Yoruma dayalı nazik rehberlik ve içgörüler öner
- Cesaretlendirici bir mesajla bitir

Yorumun şu özelliklere sahip olmalı:
- Kişisel ve sohbet tarzında
- Yaklaşık 750 token uzunluğunda
- Teknik terimlerden arınmış
- Akıcı bir anlatı şeklinde
- Pratik içgörü ve mistik bilgelik arasında dengeli

Yorumlanacak rüya:""",
        },
    },
}


@dataclass(frozen=True)
class PromptProfile:
    modality: str
    locale: str
    system_prompt: str
    temperature: float
    max_tokens: int


def normalize_locale(locale: Optional[str]) -> str:
    loc = (locale or "").strip().lower().replace("_", "-").split("-")[0]
    return loc if loc in SUPPORTED_LOCALES else DEFAULT_LOCALE


def load_prompt_table(prompt_file: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    table: Dict[str, Dict[str, Any]] = json.loads(json.dumps(DEFAULT_PROMPTS))
    candidates: List[Path] = []

    env_file = os.getenv("KAHVEFAL_PROMPTS_FILE")
    if env_file:
        candidates.append(Path(env_file).expanduser())
    if prompt_file:
        candidates.append(Path(prompt_file).expanduser())
    candidates.append(Path.home() / ".config" / "kahvefal" / "prompts.json")
    candidates.append(Path.cwd() / ".kahvefal" / "prompts.json")

    seen: set[str] = set()
    for p in candidates:
        k = str(p.resolve()) if p.exists() else str(p)
        if k in seen:
            continue
        seen.add(k)
        if not p.exists():
            continue
        payload = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            continue
        for name, cfg in payload.items():
            if not isinstance(cfg, dict):
                continue
            merged = dict(table.get(str(name).strip(), {}))
            for key, value in cfg.items():
                if key == "system_prompt" and isinstance(value, dict):
                    prompts = dict(merged.get("system_prompt") or {})
                    prompts.update({str(lk).lower(): str(lv) for lk, lv in value.items()})
                    merged["system_prompt"] = prompts
                else:
                    merged[key] = value
            table[str(name).strip()] = merged
    return table


def select_prompt(
    modality: str,
    locale: Optional[str],
    table: Optional[Dict[str, Dict[str, Any]]] = None,
) -> PromptProfile:
    table = table if table is not None else DEFAULT_PROMPTS
    if modality not in table:
        available = ", ".join(sorted(table.keys()))
        raise ValueError(f"Unknown prompt modality '{modality}'. Available: {available}")
    cfg = table[modality]
    loc = normalize_locale(locale)
    prompts = cfg.get("system_prompt") or {}
    if isinstance(prompts, str):
        system_prompt = prompts
    else:
        system_prompt = str(prompts.get(loc) or prompts.get(DEFAULT_LOCALE) or "")
    return PromptProfile(
        modality=modality,
        locale=loc,
        system_prompt=system_prompt.strip(),
        temperature=float(cfg.get("temperature", 0.7)),
        max_tokens=int(cfg.get("max_tokens", 750)),
    )


def voice_for_locale(locale: Optional[str]) -> str:
    return VOICES_BY_LOCALE[normalize_locale(locale)]


def list_prompt_modalities(prompt_file: Optional[Path] = None) -> Dict[str, str]:
    table = load_prompt_table(prompt_file=prompt_file)
    return {name: str(cfg.get("description", "")) for name, cfg in table.items()}
