from __future__ import annotations

import re
from typing import Dict, Tuple

APP_TITLE = "Al-Fiqh Assistant"
VERBATIM_MARKER = "OFFICIAL VERBATIM RECORD"
IMAGE_ONLY_CONTENT = "(Analyzed Archive Image)"
UNTITLED_SESSION = "New Inquiry"
INTERRUPTED_NOTICE = "Knowledge retrieval interrupted."
TITLE_LENGTH = 40
REPLY_QUOTE_LENGTH = 100

VOICE_MAPPING: Dict[str, str] = {"Ayesha": "Kore", "Ahmed": "Fenrir"}

_LANGUAGE_NAMES = {"en": "English", "ur": "Urdu"}

_INTRO_EN = """Welcome to the Authorized Al-Fiqh Assistant.

I am strictly limited to providing information and verbatim fatwa records from ONLY these authorized sources:
1. Jamia Binoria (banuri.edu.pk)
2. Darul Uloom Karachi (darululoomkarachi.edu.pk)
3. Darul Ifta Deoband (darulifta-deoband.com)
4. Suffah PK (suffahpk.com)
5. Darul Ifta (darulifta.info)

You can now use the "Reply" feature to anchor questions to specific points or fatwas."""

_INTRO_UR = """مستند الفقہ اسسٹنٹ میں خوش آمدید۔

میں صرف ان منظور شدہ ذرائع سے معلومات اور فتاویٰ کا لفظی ریکارڈ فراہم کرتا ہوں:
1. جامعہ بنوریہ (banuri.edu.pk)
2. دارالعلوم کراچی (darululoomkarachi.edu.pk)
3. دارالافتاء دیوبند (darulifta-deoband.com)
4. صفہ پی کے (suffahpk.com)
5. دارالافتاء (darulifta.info)

کسی خاص نکتے یا فتویٰ پر سوال کے لیے "جواب" کی سہولت استعمال کریں۔"""

_INTRO_MESSAGES = {"en": _INTRO_EN, "ur": _INTRO_UR}

_URDU_PATTERN = re.compile(r"[؀-ۿ]")


def intro_message(language: str) -> str:
    return _INTRO_MESSAGES.get(language, _INTRO_EN)


def language_directive(language: str) -> str:
    return f"Please respond in {_LANGUAGE_NAMES.get(language, 'English')}."


def provider_voice(voice: str) -> str:
    return VOICE_MAPPING.get(voice, VOICE_MAPPING["Ayesha"])


def is_urdu_text(text: str) -> bool:
    return bool(_URDU_PATTERN.search(text))


def derive_title(prompt: str) -> str:
    if not prompt:
        return UNTITLED_SESSION
    return prompt[:TITLE_LENGTH] + "..."


def split_verbatim(content: str) -> Tuple[str, str | None]:
    """Separate the conversational answer from an appended verbatim fatwa record."""

    if VERBATIM_MARKER not in content:
        return content, None
    answer, verbatim = content.split(VERBATIM_MARKER, 1)
    return answer, re.sub(r"^[:\s-]+", "", verbatim)


def share_text(content: str) -> str:
    answer, verbatim = split_verbatim(content)
    return f"*{APP_TITLE}*\n\n{answer.strip()}\n\nVerified Reference:\n{verbatim or 'N/A'}"
