import pytest

from categories import CATEGORY_META, Category, category_list
from errors import ValidationError


class TestCategory:

    def test_parse_accepts_known_keys(self):
        assert Category.parse('food') is Category.FOOD
        assert Category.parse(' Bills ') is Category.BILLS
        assert Category.parse(Category.HOME) is Category.HOME

    def test_parse_rejects_unknown_key(self):
        with pytest.raises(ValidationError) as exc:
            Category.parse('groceries')
        assert exc.value.field == 'category'

    def test_every_category_has_metadata(self):
        assert set(CATEGORY_META) == set(Category)
        for category in Category:
            assert category.label
            assert category.color.startswith('#')
            assert category.icon

    def test_category_list(self):
        items = category_list()
        assert [i['value'] for i in items] == [c.value for c in Category]
        assert items[0] == {'value': 'food', 'label': 'Food', 'color': '#22c55e', 'icon': 'Utensils'}
