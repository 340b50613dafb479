"""Mapping of (line, column) references to character offsets in script text."""


def compute_char_offset(text: str, line: int, column: int) -> int:
    """
    Convert a 1-based (line, column) into a 0-based offset into ``text``.

    Out-of-range references degrade to the end of the line or the end of
    the text, since diagnostics may refer to a buffer that was edited since.

    Args:
        text: Full script text
        line: 1-based line number (values below 1 are treated as 1)
        column: 1-based column number (values below 1 are treated as 1)

    Returns:
        Offset in the range [0, len(text)]
    """
    line = max(1, line)
    column = max(1, column)
    length = len(text)

    current_line = 1
    index = 0
    while current_line < line and index < length:
        if text[index] == "\n":
            current_line += 1
        index += 1

    advanced = 0
    while advanced < column - 1 and index < length and text[index] != "\n":
        index += 1
        advanced += 1

    return min(index, length)


def line_at(text: str, line: int) -> str:
    """Return the text of a 1-based line, or an empty string past the end."""
    lines = text.split("\n")
    if line < 1 or line > len(lines):
        return ""
    return lines[line - 1]
