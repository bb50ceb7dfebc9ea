from enum import Enum

from errors import ValidationError

CURRENCY = 'EUR'
CURRENCY_SYMBOL = '€'

# Budget rows for the whole month use this key instead of a category
TOTAL_BUDGET_KEY = '_total'


class Category(str, Enum):
    FOOD = 'food'
    BILLS = 'bills'
    TRANSPORT = 'transport'
    LEISURE = 'leisure'
    HOME = 'home'
    HEALTH = 'health'
    OTHER = 'other'

    @classmethod
    def parse(cls, value, field='category'):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError('Choose a valid category.', field=field) from None

    @property
    def label(self):
        return CATEGORY_META[self]['label']

    @property
    def color(self):
        return CATEGORY_META[self]['color']

    @property
    def icon(self):
        return CATEGORY_META[self]['icon']

    def to_dict(self):
        return {'value': self.value, **CATEGORY_META[self]}


CATEGORY_META = {
    Category.FOOD: {'label': 'Food', 'color': '#22c55e', 'icon': 'Utensils'},
    Category.BILLS: {'label': 'Bills', 'color': '#3b82f6', 'icon': 'FileText'},
    Category.TRANSPORT: {'label': 'Transport', 'color': '#f59e0b', 'icon': 'Car'},
    Category.LEISURE: {'label': 'Leisure', 'color': '#8b5cf6', 'icon': 'Gamepad2'},
    Category.HOME: {'label': 'Home', 'color': '#ec4899', 'icon': 'Home'},
    Category.HEALTH: {'label': 'Health', 'color': '#ef4444', 'icon': 'HeartPulse'},
    Category.OTHER: {'label': 'Other', 'color': '#6b7280', 'icon': 'MoreHorizontal'},
}

_missing = set(Category) - set(CATEGORY_META)
if _missing:
    raise RuntimeError(f'Category metadata missing for: {sorted(c.value for c in _missing)}')


def category_list():
    return [c.to_dict() for c in Category]
