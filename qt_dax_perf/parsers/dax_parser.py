"""DAX Tokenizer and Parser for qt-dax-perf.

Provides the structural view of DAX expressions used by the pattern
catalog and the rewrite engine: a token stream with character offsets,
a tree of function calls with argument spans, and bracket references.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


# Known DAX iterator functions -> index of the first argument evaluated in
# their row context (TOPN iterates its second argument)
ITERATOR_FUNCTIONS = {
    'SUMX': 1, 'AVERAGEX': 1, 'MINX': 1, 'MAXX': 1, 'COUNTX': 1, 'COUNTAX': 1,
    'PRODUCTX': 1, 'RANKX': 1, 'CONCATENATEX': 1, 'ADDCOLUMNS': 1,
    'SELECTCOLUMNS': 1, 'GENERATE': 1, 'GENERATEALL': 1, 'FILTER': 1, 'TOPN': 2,
}

# Iterators that aggregate their second argument into a scalar
AGGREGATING_ITERATORS = frozenset({
    'SUMX', 'AVERAGEX', 'MINX', 'MAXX', 'COUNTX', 'COUNTAX', 'PRODUCTX',
})

# Calculate variants (first argument evaluated in the modified context)
CALCULATE_FUNCTIONS = frozenset({'CALCULATE', 'CALCULATETABLE'})

# Time intelligence that evaluates its first argument over a shifted date filter
TIME_INTELLIGENCE_FUNCTIONS = frozenset({
    'TOTALYTD', 'TOTALQTD', 'TOTALMTD',
    'OPENINGBALANCEYEAR', 'OPENINGBALANCEQUARTER', 'OPENINGBALANCEMONTH',
    'CLOSINGBALANCEYEAR', 'CLOSINGBALANCEQUARTER', 'CLOSINGBALANCEMONTH',
})

# Functions whose first argument is evaluated in a modified filter context
CONTEXT_MODIFIERS = CALCULATE_FUNCTIONS | TIME_INTELLIGENCE_FUNCTIONS

# Conditionals that select between whole sub-expressions
CONDITIONAL_FUNCTIONS = frozenset({'IF', 'SWITCH', 'IF.EAGER'})

# DAX keywords (not functions)
KEYWORDS = frozenset({'VAR', 'RETURN', 'TRUE', 'FALSE', 'BLANK', 'IN', 'NOT', 'AND', 'OR'})


@dataclass
class Token:
    """A single token from DAX code."""
    type: str  # FUNC, STRING, NUMBER, OPERATOR, PAREN_*, BRACE_*, TABLE_COL, TABLE_REF, COLUMN_REF, COMMA
    value: str
    line: int
    column: int
    pos: int = 0
    end: int = 0


@dataclass(eq=False)
class FunctionCall:
    """A function call with the character spans of its arguments."""
    name: str
    start: int  # offset of the function name
    end: int  # offset just past the closing parenthesis
    line: int
    nesting_depth: int
    args: List[Tuple[int, int]] = field(default_factory=list)
    parent: Optional["FunctionCall"] = field(default=None, repr=False)
    parent_arg: int = -1  # index of the parent argument containing this call
    children: List["FunctionCall"] = field(default_factory=list, repr=False)

    @property
    def arg_count(self) -> int:
        return len(self.args)

    def arg_text(self, code: str, index: int) -> str:
        start, end = self.args[index]
        return code[start:end]

    def text(self, code: str) -> str:
        return code[self.start:self.end]

    def ancestors(self):
        """Yield (ancestor, arg_index) pairs from the innermost outwards."""
        node, arg = self.parent, self.parent_arg
        while node is not None:
            yield node, arg
            node, arg = node.parent, node.parent_arg

    def in_row_context(self) -> bool:
        """True when an enclosing iterator evaluates this call per row."""
        for ancestor, arg in self.ancestors():
            if ancestor.name in ITERATOR_FUNCTIONS and arg >= ITERATOR_FUNCTIONS[ancestor.name]:
                return True
        return False

    def in_modified_context(self) -> bool:
        """True inside the first argument of CALCULATE or a time-intelligence function."""
        for ancestor, arg in self.ancestors():
            if ancestor.name in CONTEXT_MODIFIERS and arg == 0:
                return True
        return False


@dataclass
class Reference:
    """A bracket reference: [Name], 'Table'[Name] or Table[Name]."""
    name: str
    table: Optional[str]
    start: int
    end: int

    @property
    def qualified(self) -> bool:
        return self.table is not None


@dataclass
class DAXStructure:
    """Structural view of a DAX expression."""
    code: str
    tokens: List[Token]
    calls: List[FunctionCall]
    references: List[Reference]
    variable_names: List[str]
    string_literals: List[str]

    @property
    def has_variables(self) -> bool:
        return bool(self.variable_names)

    def calls_named(self, *names: str) -> List[FunctionCall]:
        wanted = {n.upper() for n in names}
        return [c for c in self.calls if c.name in wanted]

    def calls_within(self, start: int, end: int) -> List[FunctionCall]:
        return [c for c in self.calls if c.start >= start and c.end <= end]

    def references_within(self, start: int, end: int) -> List[Reference]:
        return [r for r in self.references if r.start >= start and r.end <= end]


class DAXLexer:
    """Tokenizer for DAX expressions.

    Handles comments, strings, table/column references, and nested parentheses.
    """

    # Token specifications
    token_spec = [
        ('COMMENT_BLOCK', r'/\*[\s\S]*?\*/'),  # /* ... */
        ('COMMENT_LINE',  r'//.*'),            # // ...
        ('COMMENT_DASH',  r'--.*'),            # -- ...
        ('STRING',        r'"(?:""|[^"])*"'),  # "string" with escaped quotes
        ('TABLE_COL',     r"'(?:''|[^'])*'\[[^\]]+\]"),  # 'Table'[Column]
        ('TABLE_REF',     r"'(?:''|[^'])*'"),  # 'Table Name'
        ('COLUMN_REF',    r'\[[^\]]+\]'),      # [Column] or [Measure]
        ('NUMBER',        r'\d+(\.\d*)?'),
        ('FUNC',          r'[a-zA-Z_][a-zA-Z0-9_.]*'),  # Function names or keywords
        ('PAREN_OPEN',    r'\('),
        ('PAREN_CLOSE',   r'\)'),
        ('BRACE_OPEN',    r'\{'),
        ('BRACE_CLOSE',   r'\}'),
        ('COMMA',         r','),
        ('OPERATOR',      r'[+\-*/&|=<>^]+'),
        ('SKIP',          r'[ \t\r\n]+'),
        ('MISMATCH',      r'.'),
    ]

    # Compile regex once
    master_re = re.compile('|'.join(f'(?P<{pair[0]}>{pair[1]})' for pair in token_spec))

    def tokenize(self, code: str) -> List[Token]:
        """Tokenize DAX code into a list of tokens."""
        tokens = []
        line_num = 1
        line_start = 0

        for mo in self.master_re.finditer(code):
            kind = mo.lastgroup
            value = mo.group()

            if kind in ('SKIP', 'COMMENT_BLOCK', 'COMMENT_LINE', 'COMMENT_DASH'):
                if '\n' in value:
                    line_num += value.count('\n')
                    line_start = mo.start() + value.rfind('\n') + 1
                continue
            elif kind == 'MISMATCH':
                continue

            tokens.append(Token(kind, value, line_num, mo.start() - line_start, mo.start(), mo.end()))

        return tokens


class DAXParser:
    """Builds the call tree and reference list of a DAX expression."""

    def __init__(self, code: str):
        self.code = code
        self.lexer = DAXLexer()
        self.tokens = self.lexer.tokenize(code)

    def analyze(self) -> DAXStructure:
        """Perform full analysis and return the structure."""
        return DAXStructure(
            code=self.code,
            tokens=self.tokens,
            calls=self._extract_function_calls(),
            references=self._extract_references(),
            variable_names=self._extract_variables(),
            string_literals=[t.value[1:-1].replace('""', '"') for t in self.tokens if t.type == 'STRING'],
        )

    def _extract_function_calls(self) -> List[FunctionCall]:
        """Extract all function calls with argument spans and parent links."""
        calls: List[FunctionCall] = []
        # Frames: [call-or-None, arg_start, depth]; None marks a plain group
        stack: list = []
        tokens = self.tokens

        def innermost_call():
            for frame in reversed(stack):
                if frame[0] is not None:
                    return frame
            return None

        i = 0
        while i < len(tokens):
            token = tokens[i]

            if (token.type == 'FUNC' and token.value.upper() not in KEYWORDS
                    and i + 1 < len(tokens) and tokens[i + 1].type == 'PAREN_OPEN'):
                owner = innermost_call()
                parent = owner[0] if owner else None
                call = FunctionCall(
                    name=token.value.upper(),
                    start=token.pos,
                    end=len(self.code),
                    line=token.line,
                    nesting_depth=len(stack),
                    parent=parent,
                    parent_arg=len(parent.args) if parent else -1,
                )
                if parent is not None:
                    parent.children.append(call)
                calls.append(call)
                stack.append([call, tokens[i + 1].end])
                i += 2
                continue

            if token.type in ('PAREN_OPEN', 'BRACE_OPEN'):
                stack.append([None, token.end])
            elif token.type in ('PAREN_CLOSE', 'BRACE_CLOSE'):
                if stack:
                    frame = stack.pop()
                    call = frame[0]
                    if call is not None:
                        self._close_arg(call, frame[1], token.pos)
                        call.end = token.end
            elif token.type == 'COMMA' and stack and stack[-1][0] is not None:
                frame = stack[-1]
                self._close_arg(frame[0], frame[1], token.pos, force=True)
                frame[1] = token.end

            i += 1

        return calls

    def _close_arg(self, call: FunctionCall, start: int, end: int, force: bool = False) -> None:
        """Record an argument span, trimmed of surrounding whitespace."""
        text = self.code[start:end]
        if not text.strip():
            if force or call.args:
                call.args.append((start, start))
            return  # f()
        lead = len(text) - len(text.lstrip())
        trail = len(text) - len(text.rstrip())
        call.args.append((start + lead, end - trail))

    def _extract_references(self) -> List[Reference]:
        """Extract bracket references, merging unquoted table prefixes."""
        refs = []
        for idx, token in enumerate(self.tokens):
            if token.type == 'TABLE_COL':
                split = token.value.rfind("'[")
                table = token.value[1:split].replace("''", "'")
                name = token.value[split + 2:-1]
                refs.append(Reference(name, table, token.pos, token.end))
            elif token.type == 'COLUMN_REF':
                name = token.value[1:-1]
                prev = self.tokens[idx - 1] if idx > 0 else None
                if (prev is not None and prev.type == 'FUNC' and prev.end == token.pos
                        and prev.value.upper() not in KEYWORDS):
                    refs.append(Reference(name, prev.value, prev.pos, token.end))
                else:
                    refs.append(Reference(name, None, token.pos, token.end))
        return refs

    def _extract_variables(self) -> List[str]:
        """Extract VAR declarations."""
        var_names = []
        for i, token in enumerate(self.tokens):
            if token.type == 'FUNC' and token.value.upper() == 'VAR':
                if i + 1 < len(self.tokens) and self.tokens[i + 1].type == 'FUNC':
                    var_names.append(self.tokens[i + 1].value)
        return var_names


def analyze_dax(code: str) -> DAXStructure:
    """Convenience function to analyze DAX code."""
    parser = DAXParser(code)
    return parser.analyze()


def normalize_dax(code: str) -> str:
    """Canonical token text, used to compare expressions for duplication."""
    return " ".join(t.value.upper() if t.type == 'FUNC' else t.value for t in DAXLexer().tokenize(code))
