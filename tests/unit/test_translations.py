from fiqh_assistant.utils.translations import (
    derive_title,
    intro_message,
    is_urdu_text,
    language_directive,
    provider_voice,
    share_text,
    split_verbatim,
)


def test_derive_title_truncates_to_forty_characters():
    prompt = "What is the ruling on combining prayers while travelling by air?"
    assert derive_title(prompt) == prompt[:40] + "..."
    assert derive_title("Short") == "Short..."
    assert derive_title("") == "New Inquiry"


def test_language_directive_and_intro():
    assert language_directive("en") == "Please respond in English."
    assert language_directive("ur") == "Please respond in Urdu."
    assert "Jamia Binoria" in intro_message("en")
    assert is_urdu_text(intro_message("ur"))
    assert intro_message("xx") == intro_message("en")


def test_provider_voice_mapping():
    assert provider_voice("Ayesha") == "Kore"
    assert provider_voice("Ahmed") == "Fenrir"


def test_is_urdu_text():
    assert is_urdu_text("کیا یہ جائز ہے؟")
    assert not is_urdu_text("Is this permissible?")


def test_split_verbatim_and_share_text():
    content = "The fast remains valid.\n\nOFFICIAL VERBATIM RECORD: - Fatwa 1234, Darul Uloom Karachi"
    answer, verbatim = split_verbatim(content)
    assert answer.strip() == "The fast remains valid."
    assert verbatim == "Fatwa 1234, Darul Uloom Karachi"

    assert share_text(content) == (
        "*Al-Fiqh Assistant*\n\nThe fast remains valid.\n\nVerified Reference:\nFatwa 1234, Darul Uloom Karachi"
    )
    assert split_verbatim("plain answer") == ("plain answer", None)
    assert share_text("plain answer").endswith("Verified Reference:\nN/A")
