import unittest

from character_sheet import ability_score, completion_percent, normalize_character_data


class CharacterSheetTests(unittest.TestCase):
    def test_completion_counts_required_fields(self):
        self.assertEqual(completion_percent({}), 0)
        self.assertEqual(completion_percent(None), 0)
        self.assertEqual(completion_percent({"name": "Lyra", "class": "Bard", "level": 3, "race": ""}), 30)
        full = {
            "name": "Lyra",
            "class": "Bard",
            "level": 3,
            "race": "Elf",
            "abilities": {k: 12 for k in ("strength", "dexterity", "constitution", "intelligence", "wisdom", "charisma")},
        }
        self.assertEqual(completion_percent(full), 100)

    def test_zero_and_empty_values_are_not_filled(self):
        data = {"name": "Lyra", "level": 0, "abilities": {"strength": 0, "wisdom": 14}}
        self.assertEqual(completion_percent(data), 20)

    def test_ability_scores_default_to_ten(self):
        self.assertEqual(ability_score("15"), 15)
        self.assertEqual(ability_score("abc"), 10)
        self.assertEqual(ability_score(None), 10)
        self.assertEqual(ability_score(True), 10)
        data = normalize_character_data({"abilities": {"strength": "", "dexterity": "14", "luck": "x"}})
        self.assertEqual(data["abilities"], {"strength": 10, "dexterity": 14, "luck": "x"})

    def test_normalize_accepts_json_text_only_for_objects(self):
        self.assertEqual(normalize_character_data('{"name": "Lyra"}'), {"name": "Lyra"})
        self.assertEqual(normalize_character_data("[1, 2]"), {})
        self.assertEqual(normalize_character_data("{broken"), {})
        self.assertEqual(normalize_character_data(42), {})


if __name__ == "__main__":
    unittest.main()
