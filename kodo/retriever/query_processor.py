"""
Query Processor

Turns a prompt and/or a set of file paths into the term signal the relevance
index ranks against. The same tokenizer is used to index record text, so
query and record terms are always comparable.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Iterable, List, Optional

from ..common.schemas import Category


class QueryIntent(str, Enum):
    """Types of query intent"""
    DECISION_RATIONALE = "decision_rationale"  # "Why did we choose X?"
    PATTERN_LOOKUP = "pattern_lookup"  # "How do we handle X?"
    WORKFLOW = "workflow"  # "How do I deploy?"
    CONVENTION = "convention"  # "How should files be named?"
    DEFINITION = "definition"  # "What is a tenant?"
    TECH_STACK = "tech_stack"  # "Which database do we use?"
    GENERAL = "general"  # Catch-all


# Categories whose records a given intent favours (matched as tags)
INTENT_CATEGORIES = {
    QueryIntent.DECISION_RATIONALE: [Category.DECISION],
    QueryIntent.PATTERN_LOOKUP: [Category.RULE, Category.CONVENTION],
    QueryIntent.WORKFLOW: [Category.WORKFLOW],
    QueryIntent.CONVENTION: [Category.CONVENTION],
    QueryIntent.DEFINITION: [Category.DOMAIN],
    QueryIntent.TECH_STACK: [Category.TECH_STACK],
    QueryIntent.GENERAL: [],
}

# File extension -> language term
EXTENSION_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cs": "csharp",
    ".sql": "sql",
    ".sh": "shell",
    ".md": "markdown",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".toml": "toml",
    ".json": "json",
    ".css": "css",
    ".scss": "css",
    ".html": "html",
    ".vue": "vue",
    ".svelte": "svelte",
    ".tf": "terraform",
}

# Whole-filename -> term
FILENAME_TERMS = {
    "dockerfile": "docker",
    "makefile": "make",
    "package.json": "npm",
    "pyproject.toml": "python",
    "cargo.toml": "rust",
    "go.mod": "go",
}

# Stop words to filter from terms
STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare",
    "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
    "from", "up", "about", "into", "over", "after", "we", "our", "us",
    "i", "me", "my", "you", "your", "it", "its", "they", "them", "their",
    "this", "that", "these", "those", "what", "which", "who", "whom",
    "when", "where", "why", "how", "and", "or", "but", "if", "because",
    "as", "until", "while", "although", "though", "even", "just", "also",
    "not", "no", "so", "than", "then", "there", "here", "all", "any", "some",
    "please", "let", "lets", "get", "make", "use", "using", "always", "never",
    "src", "lib", "test", "tests", "index", "main", "init",
}

_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_WORD = re.compile(r"[A-Za-z0-9]+")


def _fold(term: str) -> str:
    """Fold simple English plurals so "errors" matches "error" """
    if len(term) > 4 and term.endswith("ies"):
        return term[:-3] + "y"
    if len(term) > 3 and term.endswith("s") and not term.endswith(("ss", "us", "is")):
        return term[:-1]
    return term


def tokenize(text: str) -> List[str]:
    """
    Split text into normalized terms.

    camelCase and snake_case identifiers are split into their parts; stop
    words and one-character tokens are dropped. Order and repeats are kept
    (callers count them).
    """
    terms = []
    for word in _WORD.findall(text or ""):
        for part in _CAMEL.split(word):
            term = part.lower()
            if len(term) < 2 or term in STOP_WORDS or term.isdigit():
                continue
            terms.append(_fold(term))
    return terms


def file_terms(path: str) -> List[str]:
    """
    Terms contributed by one file path: directory names, the stem split on
    ``_``, ``-``, ``.`` and camelCase, and the language of its extension.
    """
    pure = PurePath(path)
    terms = []
    for segment in pure.parts[:-1]:
        terms.extend(tokenize(segment))
    terms.extend(tokenize(pure.stem.replace(".", " ")))

    name = pure.name.lower()
    if name in FILENAME_TERMS:
        terms.append(FILENAME_TERMS[name])
    language = EXTENSION_LANGUAGES.get(pure.suffix.lower())
    if language:
        terms.append(language)
    return terms


@dataclass
class QuerySignals:
    """Parsed representation of a relevance query"""
    original: str
    terms: List[str] = field(default_factory=list)
    file_terms: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    intent: QueryIntent = QueryIntent.GENERAL

    @property
    def all_terms(self) -> List[str]:
        """Distinct prompt and file terms, prompt terms first"""
        return list(dict.fromkeys(self.terms + self.file_terms))

    @property
    def text(self) -> str:
        """Text used to embed the query"""
        if self.original:
            return self.original
        return " ".join(self.all_terms)

    @property
    def is_empty(self) -> bool:
        return not self.terms and not self.file_terms


class QueryProcessor:
    """
    Processes prompts and file paths into QuerySignals.

    Responsibilities:
    1. Clean and normalize prompt text
    2. Detect query intent (why, how, what) and map it to category tags
    3. Extract terms from the prompt and from file paths
    """

    INTENT_PATTERNS = {
        QueryIntent.DECISION_RATIONALE: [
            r"why did we (choose|decide|go with|select|pick)",
            r"what was the (reasoning|rationale|logic|thinking)",
            r"why .+ (over|instead of) .+",
            r"reasoning behind",
            r"\btrade-?offs?\b",
        ],
        QueryIntent.WORKFLOW: [
            r"how (do|should) (we|i) (deploy|release|test|build|run|publish|migrate)",
            r"\b(steps|process|workflow) (to|for)\b",
            r"\bbefore (committing|merging|pushing|deploying)\b",
        ],
        QueryIntent.CONVENTION: [
            r"how (should|do) (we|i) (name|format|structure|style)",
            r"\b(naming|style|formatting) (convention|rules?|guide)\b",
        ],
        QueryIntent.PATTERN_LOOKUP: [
            r"how do we (handle|deal with|approach|manage)",
            r"what'?s our (approach|standard|convention)",
            r"is there (an?|existing) (pattern|standard|convention)",
            r"what'?s the (best practice|recommended way)",
            r"how should (we|i)",
        ],
        QueryIntent.DEFINITION: [
            r"what (is|are|does) (an? |the )?\w+ (mean|stand for)",
            r"what('s| is) (an?|the) \w+\??$",
            r"\bdefin(e|ition) of\b",
        ],
        QueryIntent.TECH_STACK: [
            r"(which|what) (database|framework|library|language|runtime|version|orm|tool)",
            r"\b(stack|dependencies)\b",
        ],
    }

    def parse(self, prompt: Optional[str] = None, files: Optional[Iterable[str]] = None) -> QuerySignals:
        """
        Parse a prompt and file paths into a query signal.

        Args:
            prompt: Free-text prompt (may be empty)
            files: File paths the assistant is working on

        Returns:
            QuerySignals
        """
        cleaned = self._clean_query(prompt or "")
        intent = self._detect_intent(cleaned) if cleaned else QueryIntent.GENERAL

        path_terms: List[str] = []
        for path in files or []:
            path_terms.extend(file_terms(path))

        return QuerySignals(
            original=(prompt or "").strip(),
            terms=list(dict.fromkeys(tokenize(cleaned))),
            file_terms=list(dict.fromkeys(path_terms)),
            tags=[c.value for c in INTENT_CATEGORIES[intent]],
            intent=intent,
        )

    def _clean_query(self, query: str) -> str:
        """Clean and normalize query text"""
        # Remove extra whitespace
        cleaned = re.sub(r'\s+', ' ', query.strip())

        # Remove trailing punctuation (but keep question marks)
        cleaned = re.sub(r'[.!,;:]+$', '', cleaned)

        return cleaned

    def _detect_intent(self, query: str) -> QueryIntent:
        """Detect the primary intent of the query"""
        for intent, patterns in self.INTENT_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, query, re.IGNORECASE):
                    return intent

        return QueryIntent.GENERAL
