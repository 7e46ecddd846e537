import unittest

from persona_chat.commands.auto_command import parse_auto_start_options, parse_command, split_pipe


class AutoCommandParsingTests(unittest.TestCase):
    def test_parse_start_with_turns_and_prompt(self) -> None:
        parts = parse_command('/auto start --turns 3 "tell me more" please')

        opts, error = parse_auto_start_options(parts, line_prefix="assistant> ")

        self.assertIsNone(error)
        assert opts is not None
        self.assertEqual(3, opts.max_turns)
        self.assertEqual("tell me more please", opts.prompt)

    def test_parse_start_without_options(self) -> None:
        opts, error = parse_auto_start_options(["/auto", "start"], line_prefix="assistant> ")
        self.assertIsNone(error)
        assert opts is not None
        self.assertIsNone(opts.max_turns)
        self.assertEqual("", opts.prompt)

    def test_parse_start_rejects_non_integer_turns(self) -> None:
        opts, error = parse_auto_start_options(["/auto", "start", "--turns", "x"], line_prefix="assistant> ")
        self.assertIsNone(opts)
        assert error is not None
        self.assertIn("turns must be an integer", error)

    def test_parse_start_rejects_zero_turns_and_missing_value(self) -> None:
        _, error = parse_auto_start_options(["/auto", "start", "--turns", "0"], line_prefix="> ")
        self.assertIn("turns must be positive", error)
        _, error = parse_auto_start_options(["/auto", "start", "--turns"], line_prefix="> ")
        self.assertIn("Usage", error)

    def test_parse_start_rejects_unknown_flag(self) -> None:
        opts, error = parse_auto_start_options(["/auto", "start", "--delay", "2"], line_prefix="> ")
        self.assertIsNone(opts)
        self.assertTrue(error.startswith("> Usage"))

    def test_split_pipe(self) -> None:
        self.assertEqual(("Alice", "You are Alice."), split_pipe(" Alice | You are Alice. "))
        self.assertEqual(("Bob", ""), split_pipe("Bob"))
        self.assertEqual(("Eve", "a | b"), split_pipe("Eve | a | b"))


if __name__ == "__main__":
    unittest.main()
