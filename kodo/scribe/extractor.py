"""
Learning Extractor

Pattern-based extraction of candidate learnings from transcript events.
Core component of the capture pipeline's first stage.

Algorithm:
1. Strip code fences and split event text into sentences
2. Apply every category's compiled patterns to each sentence
   (categories are independent: one sentence may yield several candidates)
3. Detect the signal strength of the wording (corrective / confirmed /
   speculative) for the curator's initial confidence
4. Attach an evidence reference back to the originating event

Extraction is pure: it never touches the record store.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..common.errors import MalformedCandidate
from ..common.schemas import Category, EvidenceRef, Signal, compute_fingerprint
from .transcript import TranscriptEvent

logger = logging.getLogger("kodo.scribe.extractor")


@dataclass
class Candidate:
    """A typed candidate learning awaiting curation"""
    category: Category
    statement: str
    evidence: EvidenceRef
    signal: Signal = Signal.NEUTRAL
    matched_pattern: Optional[str] = None
    agent_scope: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.statement)


_TECH_TERMS = (
    r"python|node(?:\.js)?|deno|bun|typescript|javascript|rust|go(?:lang)?|java|kotlin|swift|ruby|php|"
    r"elixir|scala|c\+\+|c#|\.net|postgres(?:ql)?|mysql|sqlite|redis|mongodb|dynamodb|kafka|rabbitmq|"
    r"docker|kubernetes|helm|terraform|aws|gcp|azure|vercel|supabase|firebase|graphql|grpc|react|"
    r"next\.js|vue|nuxt|svelte|angular|django|flask|fastapi|rails|laravel|spring|express|tailwind|"
    r"pytest|jest|vitest|playwright|cypress|vite|webpack|poetry|uv|pnpm|yarn|npm|cargo|prisma|"
    r"sqlalchemy|pydantic|celery|nginx|linux"
)


class LearningExtractor:
    """
    Extracts candidate learnings using per-category pattern rules.

    Rules are independent per category; a sentence matching several
    categories yields one candidate per category.
    """

    CATEGORY_PATTERNS: Dict[Category, List[str]] = {
        # Imperative statements containing strong modal verbs
        Category.RULE: [
            r"^(?:please\s+)?(?:always|never|avoid|do not|don't|make sure|ensure|stop)\b",
            r"\b(?:must|must not|mustn't|shall not)\b",
            r"\b(?:should|shouldn't|should not)\s+(?:always|never|not|be|use|avoid|run|keep|prefer)\b",
            r"\b(?:always|never)\s+(?:use|run|call|commit|push|add|write|put|import|edit|change|delete|"
            r"create|return|raise|log|test|check|mock|hardcode)\b",
            r"\bis\s+(?:required|mandatory|forbidden|not allowed)\b",
        ],
        # Justification-shaped sentences
        Category.DECISION: [
            r"\b(?:we|i|let's|lets)\s+(?:decided|chose|choose|went with|are going with|picked|opted|"
            r"settled on|will go with)\b",
            r"\b(?:decided|decision)\s+to\b",
            r"\b(?:use|using|chose|choose|picked|prefer|went with|switched to|go with)\b.{0,80}"
            r"\b(?:because|since|due to|so that|instead of|rather than|over)\b",
            r"\btrade-?offs?\b",
        ],
        # Adoption of tools, runtimes, and versions
        Category.TECH_STACK: [
            r"\b(?:use|uses|using|built with|built on|runs on|running on|powered by|based on|depends on|"
            r"relies on)\s+(?:the\s+)?(?:" + _TECH_TERMS + r")\b",
            r"\b(?:migrat(?:e|ed|ing)|upgrad(?:e|ed|ing)|switch(?:ed|ing)?|mov(?:e|ed|ing))\s+(?:to|from)\s+"
            r"(?:" + _TECH_TERMS + r")\b",
            r"\b(?:" + _TECH_TERMS + r")\s+v?\d+(?:\.\d+)+\b",
            r"\b(?:our|the)\s+(?:stack|backend|frontend|database|orm|test runner|package manager)\s+"
            r"(?:is|uses)\b",
        ],
        # Ordered steps and commands to run around actions
        Category.WORKFLOW: [
            r"\b(?:before|after)\s+(?:committing|merging|pushing|deploying|releasing|opening a pr|"
            r"each|every|any)\b",
            r"\b(?:first|then)\b.{0,80}\b(?:run|build|test|deploy|commit|push|lint|migrate)\b",
            r"\b(?:to|in order to)\s+(?:deploy|release|test|build|run|lint|format|publish|migrate)\b.{0,60}"
            r"\b(?:run|use|execute)\b",
            r"\brun\s+`[^`]+`",
            r"\b(?:the\s+)?(?:workflow|process|release process|deploy process)\s+(?:is|for)\b",
        ],
        # Term definitions
        Category.DOMAIN: [
            r"\b(?:means|refers to|stands for|is defined as|is short for|is what we call)\b",
            r"\bwe call\b",
            r"\bin (?:this|our) (?:codebase|project|domain|repo|system),?\s+(?:an?|the)\s+\w+\s+(?:is|are)\b",
            r"\b(?:glossary|terminology)\b",
        ],
        # Naming, formatting and style statements
        Category.CONVENTION: [
            r"\b(?:snake_case|camelCase|PascalCase|kebab-case|SCREAMING_SNAKE_CASE|UPPER_CASE)\b",
            r"\b(?:name|naming|prefix|suffix)\w*\b.{0,60}\b(?:files?|functions?|variables?|classes|"
            r"components?|branch(?:es)?|tests?|tables?|columns?|methods?|modules?|commits?)\b",
            r"\b(?:files?|functions?|variables?|classes|components?|branch(?:es)?|tests?|tables?|"
            r"columns?|methods?|modules?)\b.{0,40}\b(?:named|prefixed|suffixed)\b",
            r"\b(?:indentation|indent with|tabs|spaces|line length|trailing commas?|double quotes|single quotes|"
            r"semicolons|import order|docstrings?|code style|style guide|formatter|linter)\b",
            r"\b(?:conventional commits?|commit messages?)\b",
        ],
    }

    SPECULATIVE_PATTERNS = [
        r"\b(?:maybe|perhaps|possibly|probably|might|not sure|i guess|i think|it seems|seems like|"
        r"could try|we could|consider)\b",
    ]

    CORRECTIVE_PATTERNS = [
        r"^(?:no|nope|wrong|actually|stop)\b",
        r"\binstead\b",
        r"\b(?:that's|that is|this is|it's|it is)\s+(?:wrong|incorrect|not right)\b",
        r"\b(?:never|must not|mustn't|do not|don't)\b",
        r"\bshould(?:n't)? have\b",
    ]

    CONFIRMED_PATTERNS = [
        r"\b(?:works|worked|working now|fixed|resolved|solved|succeeded|passes|passed|confirmed|"
        r"verified|did the trick|that did it|successfully)\b",
    ]

    # Openers that make every sentence of a user message corrective
    CORRECTIVE_OPENERS = re.compile(r"^\s*(?:no|nope|wrong|actually|stop|that's wrong)\b[,.!]?", re.IGNORECASE)

    _CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)
    _SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
    _BULLET = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+")
    _FILLER = re.compile(r"^(?:ok(?:ay)?|so|also|and|but|well|hmm|yes|yeah)[,:]?\s+", re.IGNORECASE)

    def __init__(
        self,
        min_length: int = 15,
        max_length: int = 400,
        event_kinds: Tuple[str, ...] = ("user", "assistant", "observation"),
    ):
        """
        Initialize learning extractor.

        Args:
            min_length: Shortest sentence considered (characters)
            max_length: Longest sentence considered (characters)
            event_kinds: Event kinds scanned; tool results are skipped by default
        """
        self._min_length = min_length
        self._max_length = max_length
        self._event_kinds = event_kinds
        self._category_patterns = {
            category: [re.compile(p, re.IGNORECASE) for p in patterns]
            for category, patterns in self.CATEGORY_PATTERNS.items()
        }
        self._speculative = [re.compile(p, re.IGNORECASE) for p in self.SPECULATIVE_PATTERNS]
        self._corrective = [re.compile(p, re.IGNORECASE) for p in self.CORRECTIVE_PATTERNS]
        self._confirmed = [re.compile(p, re.IGNORECASE) for p in self.CONFIRMED_PATTERNS]

    def extract(self, events: Iterable[TranscriptEvent]) -> List[Candidate]:
        """
        Extract candidates from a batch of events.

        A malformed candidate is logged and skipped; it never aborts the batch.

        Args:
            events: Transcript events (any iterable, consumed once)

        Returns:
            Candidates in event order
        """
        candidates: List[Candidate] = []
        for event in events:
            if event.kind not in self._event_kinds:
                continue
            candidates.extend(self.extract_event(event))
        return candidates

    def extract_event(self, event: TranscriptEvent) -> List[Candidate]:
        """Extract candidates from a single event"""
        candidates = []
        event_corrective = event.kind == "user" and bool(self.CORRECTIVE_OPENERS.match(event.text))

        for sentence in self.split_sentences(event.text):
            for category, pattern in self.classify(sentence):
                try:
                    candidate = self._build_candidate(category, sentence, event, pattern, event_corrective)
                except MalformedCandidate as e:
                    logger.info("Skipping malformed candidate (%s): %s", category.value, e)
                    continue
                candidates.append(candidate)
        return candidates

    def split_sentences(self, text: str) -> List[str]:
        """Split text into normalized, length-bounded sentences"""
        text = self._CODE_FENCE.sub(" ", text)
        sentences = []
        for raw in self._SENTENCE_SPLIT.split(text):
            sentence = self.normalize(raw)
            if not sentence or sentence.endswith("?"):
                continue
            if self._min_length <= len(sentence) <= self._max_length:
                sentences.append(sentence)
        return sentences

    def normalize(self, sentence: str) -> str:
        """Collapse whitespace and strip bullets and conversational filler"""
        sentence = self._BULLET.sub("", sentence)
        sentence = " ".join(sentence.split())
        previous = None
        while previous != sentence:
            previous = sentence
            sentence = self._FILLER.sub("", sentence)
        sentence = sentence.strip(" \t\"'")
        if sentence and sentence[0].islower():
            sentence = sentence[0].upper() + sentence[1:]
        return sentence

    def classify(self, sentence: str) -> List[Tuple[Category, str]]:
        """
        Match a sentence against every category's patterns.

        Returns:
            (category, matched pattern) for each matching category
        """
        matches = []
        for category, patterns in self._category_patterns.items():
            for pattern in patterns:
                if pattern.search(sentence):
                    matches.append((category, pattern.pattern))
                    break
        return matches

    def detect_signal(self, sentence: str, event_corrective: bool = False) -> Signal:
        """
        Detect signal strength from wording.

        Speculative wording wins over everything else: a hedged correction is
        still a guess.
        """
        if any(p.search(sentence) for p in self._speculative):
            return Signal.SPECULATIVE
        if event_corrective or any(p.search(sentence) for p in self._corrective):
            return Signal.CORRECTIVE
        if any(p.search(sentence) for p in self._confirmed):
            return Signal.CONFIRMED
        return Signal.NEUTRAL

    def _build_candidate(
        self,
        category: Category,
        sentence: str,
        event: TranscriptEvent,
        pattern: str,
        event_corrective: bool,
    ) -> Candidate:
        if not sentence.strip():
            raise MalformedCandidate("empty statement")
        if len(sentence) > self._max_length:
            raise MalformedCandidate(f"statement longer than {self._max_length} chars")
        try:
            evidence = event.evidence(excerpt=sentence)
        except ValueError as e:
            raise MalformedCandidate(f"invalid evidence: {e}", evidence=str(event.offset)) from e

        return Candidate(
            category=category,
            statement=sentence,
            evidence=evidence,
            signal=self.detect_signal(sentence, event_corrective),
            matched_pattern=pattern,
        )

    def explain(self, candidate: Candidate) -> str:
        """
        Generate human-readable explanation of an extraction.

        Args:
            candidate: Candidate to explain

        Returns:
            Explanation string
        """
        lines = [
            f"Candidate {candidate.category.value} ({candidate.signal.value})",
            f"  Statement: \"{candidate.statement}\"",
            f"  Matched pattern: {candidate.matched_pattern}",
            f"  Evidence: {candidate.evidence.ref}",
        ]
        return "\n".join(lines)
