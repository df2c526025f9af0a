import json
import os

import questionary

from domainhelper.logger import log

TRANSLATIONS = {}
DEFAULT_LANG = "en"
LOCALES_DIR = os.path.join(os.path.dirname(__file__), "locales")
LANGUAGES = {"en": "English", "ru": "Русский"}


def load_language(lang_code=DEFAULT_LANG):
    """
    Loads the translation file for `lang_code` into the global TRANSLATIONS
    dictionary, falling back to English when it is missing or broken.
    """
    global TRANSLATIONS

    filepath = os.path.join(LOCALES_DIR, f"{lang_code}.json")
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            TRANSLATIONS = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        log(f"Could not load language file: {filepath}. Defaulting to English.", "WARNING")
        lang_code = DEFAULT_LANG
        filepath = os.path.join(LOCALES_DIR, f"{DEFAULT_LANG}.json")
        with open(filepath, "r", encoding="utf-8") as f:
            TRANSLATIONS = json.load(f)

    return lang_code


def choose_language():
    """Prompts the user to select a language and loads it."""
    lang_choice = questionary.select(
        "Please select a language / Пожалуйста, выберите язык:",
        choices=[{"name": name, "value": code} for code, name in LANGUAGES.items()],
        pointer="👉"
    ).ask()

    if lang_choice is None:
        lang_choice = DEFAULT_LANG

    return load_language(lang_choice)


def t(key, default=None, **kwargs):
    """
    Returns the translated string for a given key.
    If the key is not found, returns the `default` value.
    If no default is provided, returns the key itself.
    Replaces placeholders with values from kwargs.
    """
    template = TRANSLATIONS.get(key)
    if template is None:
        template = default if default is not None else key

    return template.format(**kwargs)
