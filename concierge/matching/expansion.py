"""
Term expansion for gating fallbacks.

When strict hard-term gating returns nothing, each term is expanded before
gating again. Layers, applied in order:

1. Morphology: plural/singular, hyphen/space variants
2. Spelling: common typos and UK/US locale spellings
3. Translations: product nouns in Spanish, French, German and Dutch
4. Abbreviations: "edp" -> "eau de parfum" and back
5. Synonyms: a small cross-industry synonym table

Expansion never invents products: a catalog that uses none of the variants
still gates to empty.
"""
import re
import unicodedata
from typing import Dict, Iterable, List, Set

# Each group is a set of interchangeable terms (regional or colloquial)
SYNONYM_GROUPS: List[Set[str]] = [
    # Apparel
    {"sneakers", "trainers", "runners", "athletic shoes", "gym shoes"},
    {"trousers", "pants", "slacks"},
    {"sweater", "jumper", "pullover"},
    {"vest", "waistcoat"},
    {"pajamas", "pyjamas"},
    {"coat", "overcoat", "topcoat"},
    # Beauty
    {"makeup", "make-up", "cosmetics"},
    {"nail polish", "nail varnish", "nail lacquer"},
    {"perfume", "fragrance", "parfum", "eau de parfum", "eau de toilette"},
    # Electronics
    {"phone", "mobile", "cell phone", "smartphone"},
    {"laptop", "notebook computer"},
    {"headphones", "earphones", "earbuds", "headset"},
    {"charger", "power adapter", "charging cable"},
    {"tv", "television"},
    # Home
    {"sofa", "couch", "settee"},
    {"cushion", "pillow"},
    {"curtains", "drapes"},
    {"wardrobe", "closet", "armoire"},
    {"faucet", "tap"},
    # Food
    {"cookie", "biscuit"},
    {"candy", "sweets", "confectionery"},
    {"zucchini", "courgette"},
    {"eggplant", "aubergine"},
    # Outdoors, sport, travel
    {"racket", "racquet"},
    {"shovel", "spade"},
    {"planter", "plant pot", "flower pot"},
    {"suitcase", "luggage", "travel bag"},
    {"backpack", "rucksack"},
    {"leash", "lead"},
    {"vitamin", "vitamins", "supplement", "supplements"},
    # Baby, retail
    {"stroller", "pushchair", "buggy"},
    {"pacifier", "dummy", "soother"},
    {"gift", "present"},
    {"sale", "discount", "deal", "offer"},
]

# UK spelling -> US spelling; lookups go both ways
LOCALE_SPELLINGS: Dict[str, str] = {
    "colour": "color",
    "colours": "colors",
    "tyre": "tire",
    "tyres": "tires",
    "moisturiser": "moisturizer",
    "moisturisers": "moisturizers",
    "moisturise": "moisturize",
    "centre": "center",
    "centres": "centers",
    "organiser": "organizer",
    "organisers": "organizers",
    "favourite": "favorite",
    "favourites": "favorites",
    "grey": "gray",
    "jewellery": "jewelry",
    "aluminium": "aluminum",
    "catalogue": "catalog",
    "parfume": "perfume",
    "parfumes": "perfumes",
}

# Misspelling -> intended term
TYPO_CORRECTIONS: Dict[str, str] = {
    "pefrume": "perfume",
    "perfum": "perfume",
    "fragance": "fragrance",
    "lipstik": "lipstick",
    "sneekers": "sneakers",
    "snekers": "sneakers",
    "trouser": "trousers",
    "jean": "jeans",
    "pant": "pants",
    "headphone": "headphones",
    "earbud": "earbuds",
    "neckless": "necklace",
    "braclet": "bracelet",
    "sweter": "sweater",
    "jaket": "jacket",
    "accesories": "accessories",
    "shampo": "shampoo",
    "moisturizor": "moisturizer",
}

# Abbreviation -> full form; the reverse direction is derived
ABBREVIATIONS: Dict[str, str] = {
    "tv": "television",
    "ssd": "solid state drive",
    "cpu": "processor",
    "gpu": "graphics card",
    "spf": "sun protection factor",
    "edp": "eau de parfum",
    "edt": "eau de toilette",
    "uv": "ultraviolet",
    "xs": "extra small",
    "xl": "extra large",
    "xxl": "extra extra large",
    "pcs": "pieces",
    "qty": "quantity",
}

# English product noun -> translations (es, fr, de, nl)
TRANSLATIONS: Dict[str, List[str]] = {
    "perfume": ["fragancia", "parfüm", "parfum"],
    "shoes": ["zapatos", "calzado", "chaussures", "schuhe", "schoenen"],
    "shirt": ["camisa", "chemise", "hemd"],
    "dress": ["vestido", "robe", "kleid", "jurk"],
    "pants": ["pantalones", "pantalon", "hose", "broek"],
    "jacket": ["chaqueta", "veste", "blouson", "jacke", "jas"],
    "bag": ["bolsa", "bolso", "sac", "tasche", "tas"],
    "watch": ["reloj", "montre", "uhr", "horloge"],
    "phone": ["teléfono", "celular", "téléphone", "telefoon"],
    "headphones": ["auriculares", "audífonos", "écouteurs", "kopfhörer"],
    "sofa": ["sofá", "canapé"],
    "table": ["mesa", "tisch", "tafel"],
    "chair": ["silla", "chaise", "stuhl", "stoel"],
    "bed": ["cama", "lit", "bett"],
    "lamp": ["lámpara", "lampe"],
    "bike": ["bicicleta", "bici", "vélo", "fahrrad", "fiets"],
    "gift": ["regalo", "cadeau", "geschenk"],
    "sale": ["oferta", "rebaja", "solde", "uitverkoop"],
}

_SYNONYMS: Dict[str, Set[str]] = {}
for _group in SYNONYM_GROUPS:
    for _term in _group:
        _SYNONYMS.setdefault(_term, set()).update(_group - {_term})

_LOCALE: Dict[str, str] = dict(LOCALE_SPELLINGS)
_LOCALE.update({us: uk for uk, us in LOCALE_SPELLINGS.items()})

_ABBREVIATION_REVERSE: Dict[str, str] = {full: abbr for abbr, full in ABBREVIATIONS.items()}

_ES_PLURAL_RE = re.compile(r"(x|z|ch|sh)$")


def strip_accents(text: str) -> str:
    """"téléphone" -> "telephone"."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _translation_groups() -> Dict[str, Set[str]]:
    groups: Dict[str, Set[str]] = {}
    for english, words in TRANSLATIONS.items():
        group = {english}
        for word in words:
            group.add(word)
            group.add(strip_accents(word))
        for member in group:
            groups.setdefault(member, set()).update(group - {member})
    return groups


_TRANSLATED = _translation_groups()


def expand_morphology(term: str) -> Set[str]:
    """Plural/singular and hyphen/space variants of a term."""
    normalized = (term or "").lower().strip()
    variants = {normalized}
    if len(normalized) < 2:
        return variants

    if "-" in normalized:
        variants.add(normalized.replace("-", " "))
        variants.add(normalized.replace("-", ""))
    if " " in normalized:
        variants.add(re.sub(r"\s+", "-", normalized))
        variants.add(re.sub(r"\s+", "", normalized))

    if normalized.endswith("es") and len(normalized) > 4:
        variants.add(normalized[:-2])
        variants.add(normalized[:-1])
    elif normalized.endswith("s") and len(normalized) > 3:
        variants.add(normalized[:-1])
    elif _ES_PLURAL_RE.search(normalized):
        variants.add(normalized + "es")
    else:
        variants.add(normalized + "s")
    return variants


def expand_spelling(term: str) -> Set[str]:
    """Typo corrections and UK/US locale spellings."""
    normalized = (term or "").lower().strip()
    variants = {normalized}
    corrected = TYPO_CORRECTIONS.get(normalized)
    if corrected:
        variants.add(corrected)
    for variant in list(variants):
        if variant in _LOCALE:
            variants.add(_LOCALE[variant])
    return variants


def expand_translations(term: str) -> Set[str]:
    normalized = (term or "").lower().strip()
    variants = {normalized}
    variants |= _TRANSLATED.get(normalized, set())
    variants |= _TRANSLATED.get(strip_accents(normalized), set())
    return variants


def expand_abbreviations(term: str) -> Set[str]:
    """Abbreviation to full form, and a full form back to its abbreviation."""
    normalized = (term or "").lower().strip()
    variants = {normalized}
    if normalized in ABBREVIATIONS:
        variants.add(ABBREVIATIONS[normalized])
    spaced = normalized.replace("-", " ")
    for full, abbr in _ABBREVIATION_REVERSE.items():
        # Multi-word forms also match inside longer phrases ("eau de parfum intense")
        if spaced == full or (" " in full and re.search(rf"\b{re.escape(full)}\b", spaced)):
            variants.add(abbr)
    return variants


def expand_synonyms(term: str) -> Set[str]:
    normalized = (term or "").lower().strip()
    return {normalized} | _SYNONYMS.get(normalized, set())


def expand_term(term: str) -> Set[str]:
    """
    All variants of a term across every expansion layer.

    Spelling runs on each morphological form; translations, abbreviations
    and synonyms then run on every corrected form, and each result gets its
    own morphology and spelling variants.
    """
    base: Set[str] = set()
    for variant in expand_morphology(term):
        base |= expand_spelling(variant)

    expanded: Set[str] = set(base)
    for variant in base:
        related = expand_translations(variant) | expand_abbreviations(variant) | expand_synonyms(variant)
        for word in related:
            for form in expand_morphology(word):
                expanded |= expand_spelling(form)
    expanded.discard("")
    return expanded


def expand_terms(terms: Iterable[str]) -> Dict[str, Set[str]]:
    """Map each term to its expansion set."""
    return {term: expand_term(term) for term in terms if term and term.strip()}
