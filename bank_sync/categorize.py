"""Best-effort mapping of bank transactions to expense categories.

Merchant category codes win; otherwise keyword rules run over the creditor,
debtor and remittance text; anything else lands in ``other``.
"""
import hashlib
import re

from categories import Category

MCC_RANGES = [
    # (first, last, category), inclusive
    (4011, 4789, Category.TRANSPORT),
    (4812, 4900, Category.BILLS),
    (5039, 5261, Category.HOME),
    (5411, 5499, Category.FOOD),
    (5511, 5599, Category.TRANSPORT),
    (5712, 5722, Category.HOME),
    (5812, 5814, Category.FOOD),
    (5815, 5818, Category.LEISURE),
    (5912, 5912, Category.HEALTH),
    (5941, 5973, Category.LEISURE),
    (5975, 5977, Category.HEALTH),
    (6300, 6300, Category.BILLS),
    (7511, 7549, Category.TRANSPORT),
    (7623, 7699, Category.HOME),
    (7832, 7999, Category.LEISURE),
    (8011, 8099, Category.HEALTH),
]

KEYWORD_RULES = [
    (Category.FOOD, [
        'mercadona', 'carrefour', 'lidl', 'aldi', 'eroski', 'alcampo', 'hipercor', 'consum',
        'bonarea', 'condis', 'caprabo', 'ahorramas', 'supermercado', 'supermarket', 'grocery',
        'fruteria', 'panaderia', 'bakery', 'carniceria', 'mcdonald', 'burger king', 'kfc',
        'telepizza', 'dominos', 'pizza', 'starbucks', 'restaurante', 'restaurant', 'cafeteria',
        'cafe', 'just eat', 'glovo', 'uber eats', 'deliveroo',
    ]),
    (Category.TRANSPORT, [
        'repsol', 'cepsa', 'shell', 'galp', 'petronor', 'gasolinera', 'fuel', 'diesel', 'renfe',
        'metro', 'autobus', 'bus', 'cercanias', 'ouigo', 'iryo', 'uber', 'cabify', 'bolt',
        'freenow', 'taxi', 'blablacar', 'parking', 'aparcamiento', 'peaje', 'toll', 'iberia',
        'vueling', 'ryanair', 'air europa', 'volotea', 'easyjet', 'aeropuerto', 'airport',
    ]),
    (Category.BILLS, [
        'movistar', 'vodafone', 'orange', 'yoigo', 'masmovil', 'pepephone', 'digi', 'endesa',
        'iberdrola', 'naturgy', 'holaluz', 'electricidad', 'electricity', 'gas natural', 'aguas',
        'water', 'netflix', 'hbo', 'disney+', 'prime video', 'spotify', 'dazn', 'mapfre', 'axa',
        'allianz', 'generali', 'seguro', 'insurance', 'hacienda', 'impuesto', 'tax',
    ]),
    (Category.HOME, [
        'ikea', 'leroy merlin', 'bricodepot', 'bauhaus', 'bricomart', 'ferreteria', 'hardware',
        'muebles', 'furniture', 'zara home', 'maisons du monde', 'mediamarkt', 'media markt',
        'pc componentes', 'worten', 'electrodomestico', 'limpieza', 'alquiler', 'rent',
    ]),
    (Category.HEALTH, [
        'farmacia', 'pharmacy', 'parafarmacia', 'optica', 'clinica', 'clinic', 'hospital',
        'quironsalud', 'vithas', 'dentista', 'dental', 'fisioterapia', 'medico', 'doctor',
        'gimnasio', 'gym', 'basic fit', 'mcfit', 'altafit', 'yoga', 'pilates',
    ]),
    (Category.LEISURE, [
        'cine', 'cinema', 'cinesa', 'yelmo', 'teatro', 'theatre', 'concierto', 'ticketmaster',
        'booking', 'airbnb', 'expedia', 'hotel', 'hostal', 'edreams', 'zara', 'h&m', 'mango',
        'primark', 'uniqlo', 'decathlon', 'amazon', 'aliexpress', 'shein', 'steam',
        'playstation', 'xbox', 'nintendo', 'fnac', 'el corte ingles',
    ]),
]

# Word-boundary matching so short keywords ('bus', 'tax') do not fire inside other words
_KEYWORD_PATTERNS = [
    (category, re.compile(r'(?<![a-z0-9])(?:' + '|'.join(re.escape(k) for k in keywords) + r')(?![a-z0-9])'))
    for category, keywords in KEYWORD_RULES
]


def category_for_mcc(code):
    try:
        code = int(str(code).strip())
    except (TypeError, ValueError):
        return None
    for first, last, category in MCC_RANGES:
        if first <= code <= last:
            return category
    return None


def _text(value, key):
    """Vendor free text: a string or a list of strings. Anything else marks the record malformed."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list):
        return ' '.join(str(v) for v in value)
    raise ValueError(f'unexpected {type(value).__name__} in {key}')


def _remittance(record):
    return (_text(record.get('remittance_information'), 'remittance_information')
            or _text(record.get('remittance_information_unstructured'), 'remittance_information_unstructured'))


def _search_text(record):
    parts = [
        *counterparty(record),
        _remittance(record),
        _text(record.get('additional_information'), 'additional_information'),
    ]
    return ' '.join(p for p in parts if p).lower()


def _name(party, key):
    return _text(party.get('name'), key) if isinstance(party, dict) else None


def categorize(record):
    category = category_for_mcc(record.get('merchant_category_code'))
    if category:
        return category
    text = _search_text(record)
    for category, pattern in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return category
    return Category.OTHER


def counterparty(record):
    return (_name(record.get('creditor'), 'creditor') or _text(record.get('creditor_name'), 'creditor_name'),
            _name(record.get('debtor'), 'debtor') or _text(record.get('debtor_name'), 'debtor_name'))


def describe(record, max_length=100):
    creditor, debtor = counterparty(record)
    if creditor:
        return creditor[:max_length]
    if debtor:
        return debtor[:max_length]
    remittance = _remittance(record)
    if remittance:
        return ' '.join(remittance.split())[:max_length]
    additional = _text(record.get('additional_information'), 'additional_information')
    if additional:
        return additional[:max_length]
    return 'Bank transaction'


def external_id(record):
    """Vendor id when present, otherwise a stable digest of the record's key fields."""
    for key in ('transaction_id', 'entry_reference', 'internal_transaction_id'):
        if record.get(key):
            return str(record[key])
    amount = record.get('transaction_amount') or {}
    creditor, debtor = counterparty(record)
    raw = '|'.join(str(v or '') for v in (record.get('booking_date') or record.get('value_date'),
                                          amount.get('amount'), creditor, debtor))
    return 'gen_' + hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]
