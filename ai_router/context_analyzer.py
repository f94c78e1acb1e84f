"""
Context Analyzer

Turns raw request text into a ContextAnalysis: complexity score, task type,
token estimate, cost budget and language optimization hint. The analyzer is a
pure function of its inputs and heuristic tables and never fails.
"""

import logging
import math
import re
from typing import Dict, Any, List, Optional, Union, Pattern

from ai_router.config import AnalyzerConfig
from ai_router.schemas import (
    ContextAnalysis,
    TaskType,
    Urgency,
    LanguageOptimization,
)

logger = logging.getLogger(__name__)

# Public procurement, security and IT infrastructure vocabulary
DOMAIN_TERM_PATTERNS: List[Pattern] = [
    re.compile(r"\b(CCTP|CCP|BPU|DCE|MAPA|DUME|ACTE)\b", re.IGNORECASE),
    re.compile(r"\b(PASSI|ANSSI|ISO\s?27001|CSPN|RGS|RGPD)\b", re.IGNORECASE),
    re.compile(r"\b(VMware|vSphere|Hyper-V|Docker|Kubernetes|Terraform)\b", re.IGNORECASE),
    re.compile(r"\b(Azure|AWS|GCP|SaaS|IaaS|PaaS)\b", re.IGNORECASE),
    re.compile(r"\b(code\s+march[ée]s?\s+publics?|SRCAE|RGAA|RGI|LPM)\b", re.IGNORECASE),
    re.compile(r"\b(ITIL|COBIT|Prince2|Agile|DevOps|SCRUM)\b", re.IGNORECASE),
]

SECTION_PATTERNS: List[Pattern] = [
    re.compile(r"chapitre\s+\d+", re.IGNORECASE),
    re.compile(r"article\s+\d+", re.IGNORECASE),
    re.compile(r"section\s+\d+", re.IGNORECASE),
    re.compile(r"^\s*[IVX]+\.\s+", re.MULTILINE),
    re.compile(r"^\s*\d+\.\d+\.\s+", re.MULTILINE),
]

STRUCTURAL_ELEMENT_PATTERNS: List[Pattern] = [
    re.compile(r"tableau|figure|annexe|sch[ée]ma", re.IGNORECASE),
    re.compile(r"\bvoir\s+annexe\b|\bci-joint\b|\bci-dessous\b", re.IGNORECASE),
    re.compile(r"r[ée]f[ée]rences?\s+normatives?", re.IGNORECASE),
    re.compile(r"prescriptions?\s+techniques?", re.IGNORECASE),
]

OBLIGATION_PATTERNS: List[Pattern] = [
    re.compile(r"\b(doit|devra|est\s+tenu|obligation|exigence)\b", re.IGNORECASE),
    re.compile(r"\b(d[ée]lai|[ée]ch[ée]ance|date\s+limite|dans\s+les?\s+\d+\s+jours?)\b", re.IGNORECASE),
    re.compile(r"\b(conformes?\s+[àa]|respect\s+de|selon\s+la\s+norme)\b", re.IGNORECASE),
    re.compile(r"\b(p[ée]nalit[ée]|sanction|retenue|r[ée]siliation)\b", re.IGNORECASE),
    re.compile(r"\b(certification|agr[ée]ment|habilitation|qualification)\b", re.IGNORECASE),
]

# Declaration order is the tie-break precedence
TASK_PATTERNS: Dict[TaskType, List[Pattern]] = {
    TaskType.CLASSIFY: [
        re.compile(r"classifier|cat[ée]goriser|identifier\s+le\s+type|quelle?\s+cat[ée]gorie|classify|categori[sz]e", re.IGNORECASE),
        re.compile(r"\b(CCTP|CCP|BPU|RC)\b.*document", re.IGNORECASE),
    ],
    TaskType.EXTRACT: [
        re.compile(r"extraire|identifier|analyser|d[ée]tecter|extract", re.IGNORECASE),
        re.compile(r"quels?\s+sont\s+les?|liste\s+des?|[ée]num[ée]rer|\b(quel(le)?s?|which|what)\b.*\b(sont|are)\b", re.IGNORECASE),
        re.compile(r"exigences?|contraintes?|obligations?|\bexig[ée]e?s?\b|\brequis\b|\brequired\b", re.IGNORECASE),
    ],
    TaskType.GENERATE: [
        re.compile(r"g[ée]n[ée]rer|r[ée]diger|cr[ée]er|produire|[ée]laborer|generate|draft|write", re.IGNORECASE),
        re.compile(r"r[ée]ponse|proposition|offre|devis", re.IGNORECASE),
    ],
    TaskType.CALCULATE: [
        re.compile(r"calculer|estimer|[ée]valuer|chiffrer|calculate", re.IGNORECASE),
        re.compile(r"prix|co[ûu]t|tarif|budget|montant|price|cost", re.IGNORECASE),
        re.compile(r"combien|quel\s+est\s+le\s+co[ûu]t|how\s+much", re.IGNORECASE),
    ],
    TaskType.EMBED: [
        re.compile(r"recherche|similarit[ée]|comparable|ressemblant|similarity", re.IGNORECASE),
        re.compile(r"matching|correspondance|r[ée]f[ée]rences?", re.IGNORECASE),
    ],
    TaskType.ANALYZE: [
        re.compile(r"analyser|[ée]valuer|examiner|[ée]tudier|analy[sz]e", re.IGNORECASE),
        re.compile(r"complexit[ée]|risques?|opportunit[ée]s?", re.IGNORECASE),
        re.compile(r"strat[ée]gie|recommandation|conseil", re.IGNORECASE),
    ],
}

SPECIALIZED_LANGUAGE_PATTERNS: List[Pattern] = [
    re.compile(r"\b(dont|où|lorsque|tandis|néanmoins|toutefois)\b", re.IGNORECASE),
    re.compile(r"\b(march[ée]|collectivit[ée]|pr[ée]fecture|minist[èe]res?|conseil\s+g[ée]n[ée]ral)\b", re.IGNORECASE),
    re.compile(r"[àâäéèêëïîôöùûüÿñç]", re.IGNORECASE),
    re.compile(r"qu'est-ce\s+que|c'est-à-dire|par\s+cons[ée]quent", re.IGNORECASE),
]

TASK_HINTS: Dict[str, TaskType] = {
    "classify": TaskType.CLASSIFY,
    "extract": TaskType.EXTRACT,
    "generate": TaskType.GENERATE,
    "calculate": TaskType.CALCULATE,
    "embed": TaskType.EMBED,
    "analyze": TaskType.ANALYZE,
    "chat": TaskType.ANALYZE,
}

# Sub-score caps and weights of the complexity formula
LENGTH_CAP, LENGTH_WEIGHT = 3.0, 1.0
DOMAIN_CAP, DOMAIN_WEIGHT = 2.0, 2.0
STRUCTURE_CAP, STRUCTURE_WEIGHT = 3.0, 1.5
OBLIGATION_CAP, OBLIGATION_WEIGHT = 2.0, 1.5


def _count(patterns: List[Pattern], content: str) -> int:
    return sum(len(pattern.findall(content)) for pattern in patterns)


class ContextAnalyzer:
    """
    Heuristic analyzer for raw request text

    The pattern tables default to public-tender vocabulary; pass other tables
    to specialize the analyzer for a different domain language.
    """

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        task_patterns: Optional[Dict[TaskType, List[Pattern]]] = None,
        language_patterns: Optional[List[Pattern]] = None
    ):
        self.config = config or AnalyzerConfig()
        self.task_patterns = task_patterns or TASK_PATTERNS
        self.language_patterns = language_patterns or SPECIALIZED_LANGUAGE_PATTERNS

    def analyze(
        self,
        content: Optional[str],
        urgency: Union[Urgency, str] = Urgency.BALANCED,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ContextAnalysis:
        """
        Analyze a request

        Args:
            content: Raw request text (None or empty is accepted)
            urgency: fast, balanced or quality
            metadata: Opaque caller metadata; `task_hint` overrides task classification

        Returns:
            ContextAnalysis for the request
        """
        content = content or ""
        metadata = dict(metadata or {})
        urgency = self._coerce_urgency(urgency)

        complexity = self.analyze_complexity(content)
        task_type = self._task_from_hint(metadata.get("task_hint")) or self.classify_task(content)
        language = self.detect_language_optimization(content)
        content_size = self.estimate_tokens(content, language)
        cost_budget = self.estimate_budget(complexity, task_type, urgency)

        return ContextAnalysis(
            complexity=complexity,
            content_size_tokens=content_size,
            task_type=task_type,
            urgency=urgency,
            cost_budget=cost_budget,
            language_optimization=language,
            metadata=metadata
        )

    # ================== Complexity ==================

    def analyze_complexity(self, content: str) -> int:
        """Complexity on a 1-10 scale from four bounded sub-scores"""
        length = min(len(content) / 1000, LENGTH_CAP)
        domain_terms = min(_count(DOMAIN_TERM_PATTERNS, content) / 5, DOMAIN_CAP)
        structure = self._structure_score(content)
        obligations = min(_count(OBLIGATION_PATTERNS, content) / 8, OBLIGATION_CAP)

        raw_score = (
            length * LENGTH_WEIGHT
            + domain_terms * DOMAIN_WEIGHT
            + structure * STRUCTURE_WEIGHT
            + obligations * OBLIGATION_WEIGHT
        )
        return max(1, min(10, int(round(raw_score))))

    def _structure_score(self, content: str) -> float:
        score = 0.0
        for pattern in SECTION_PATTERNS:
            matches = len(pattern.findall(content))
            if matches:
                score += min(1.0, matches / 10)
        for pattern in STRUCTURAL_ELEMENT_PATTERNS:
            if pattern.search(content):
                score += 0.5
        return min(STRUCTURE_CAP, score)

    # ================== Task classification ==================

    def classify_task(self, content: str) -> TaskType:
        """Pattern vote; earlier task types win ties, ANALYZE when nothing matches"""
        best_type, best_score = TaskType.ANALYZE, 0
        for task_type, patterns in self.task_patterns.items():
            score = sum(1 for pattern in patterns if pattern.search(content))
            if score > best_score:
                best_type, best_score = task_type, score
        return best_type

    def _task_from_hint(self, hint: Any) -> Optional[TaskType]:
        if hint is None:
            return None
        if isinstance(hint, TaskType):
            return hint
        key = str(hint).strip()
        if key.lower() in TASK_HINTS:
            return TASK_HINTS[key.lower()]
        try:
            return TaskType(key.upper())
        except ValueError:
            logger.warning(f"Ignoring unknown task hint '{hint}'")
            return None

    # ================== Size, language and budget ==================

    def estimate_tokens(self, content: str, language: LanguageOptimization) -> int:
        chars_per_token = self.config.chars_per_token.get(language, 4.0)
        return max(1, math.ceil(len(content) / chars_per_token))

    def detect_language_optimization(self, content: str) -> LanguageOptimization:
        indicators = _count(self.language_patterns, content)
        if indicators > self.config.specialized_indicator_threshold:
            return LanguageOptimization.SPECIALIZED
        return LanguageOptimization.GENERAL

    def estimate_budget(self, complexity: int, task_type: TaskType, urgency: Urgency) -> float:
        """Budget in currency units, rounded to cents"""
        base = self.config.base_costs.get(task_type, 0.0)
        complexity_multiplier = 1 + (complexity - 1) * 0.2
        urgency_multiplier = self.config.urgency_multipliers.get(urgency, 1.0)
        return round(max(0.0, base * complexity_multiplier * urgency_multiplier), 2)

    def _coerce_urgency(self, urgency: Union[Urgency, str, None]) -> Urgency:
        if isinstance(urgency, Urgency):
            return urgency
        try:
            return Urgency(str(urgency).lower())
        except ValueError:
            logger.warning(f"Unknown urgency '{urgency}', using balanced")
            return Urgency.BALANCED


__all__ = ["ContextAnalyzer", "TASK_PATTERNS", "TASK_HINTS"]
