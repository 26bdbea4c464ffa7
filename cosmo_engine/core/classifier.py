"""
Intent Classifier implementation: keyword scoring with a model-call fallback.
"""

from typing import Dict, List, Optional, Any, Iterable, Tuple

from ..models import Intent, ClassificationResult
from ..models.config import ClassifierConfig
from ..utils import get_logger
from ..utils.error_handling import ClassificationError, handle_error


class IntentClassifier:
    """
    Maps free-form text to one of the configured intents.

    Classification happens in two stages:
    - Keyword scoring: every active intent counts how many of its keywords
      occur in the lowercased text. The matching intent with the highest
      priority wins, then the one with more matches, then the one created first.
    - Model classification: when nothing matches, or the winner's keyword score
      (matches * priority / 100) is below the configured minimum, one model
      call asks for a category name from the list of active intents.

    If the model call is not possible the keyword winner stands, and with no
    winner at all the configured fallback intent is returned with confidence 0.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None, model_client: Optional[Any] = None):
        self.config = config or ClassifierConfig()
        self.model_client = model_client
        self.logger = get_logger(__name__)

    def classify(self, text: str, intents: Iterable[Intent],
                 available_context: Optional[Dict[str, Any]] = None,
                 allow_model_call: bool = True,
                 model_id: Optional[str] = None) -> ClassificationResult:
        """
        Classify a request.

        Args:
            text: The request text
            intents: Intents from the current configuration snapshot
            available_context: Context keys the caller supplied
            allow_model_call: Set False to forbid the upstream call (dry runs)
            model_id: Model used for the classification call when the
                classifier config names none

        Returns:
            ClassificationResult; never raises for unresolvable text
        """
        active = [intent for intent in intents if intent.active]
        available_context = available_context or {}
        order = {intent.key: index for index, intent in enumerate(active)}

        # Step 1: Keyword scoring
        ranked = self.rank_keyword_matches(text, active, order)
        winner: Optional[Tuple[Intent, List[str]]] = ranked[0] if ranked else None
        keyword_score = 0.0
        if winner:
            keyword_score = len(winner[1]) * winner[0].priority / 100

        if winner and keyword_score >= self.config.min_keyword_score:
            intent, matched = winner
            self.logger.info(f"Keyword classification: {intent.key} (score: {keyword_score:.2f})")
            return self._result(intent, min(keyword_score, 1.0), "keyword", matched, available_context,
                                {"keyword_score": keyword_score})

        # Step 2: Model classification for weak or missing keyword matches
        if allow_model_call and self.config.enable_model_classification:
            model_result = self._classify_with_model(text, active, order,
                                                     self.config.classification_model_id or model_id)
            if model_result:
                intent, confidence, answer = model_result
                self.logger.info(f"Model classification: {intent.key} (confidence: {confidence:.2f})")
                return self._result(intent, confidence, "model", winner[1] if winner else [],
                                    available_context,
                                    {"model_answer": answer, "keyword_score": keyword_score})

        # Step 3: Keep the weak keyword match, or fall back
        if winner:
            intent, matched = winner
            self.logger.info(f"Keeping weak keyword match: {intent.key} (score: {keyword_score:.2f})")
            return self._result(intent, min(keyword_score, 1.0), "keyword", matched, available_context,
                                {"keyword_score": keyword_score})

        return self._fallback(active, available_context)

    def rank_keyword_matches(self, text: str, intents: List[Intent],
                             order: Optional[Dict[str, int]] = None) -> List[Tuple[Intent, List[str]]]:
        """
        Rank intents whose keywords occur in the text.

        Returns:
            (intent, matched_keywords) pairs, best first
        """
        lowered = (text or "").lower()
        order = order or {intent.key: index for index, intent in enumerate(intents)}

        matches = []
        for intent in intents:
            matched = [kw for kw in intent.keywords if kw and kw.lower() in lowered]
            if matched:
                matches.append((intent, matched))

        matches.sort(key=lambda pair: (
            -pair[0].priority,
            -len(pair[1]),
            pair[0].created_at,
            order.get(pair[0].key, 0),
        ))
        return matches

    def _classify_with_model(self, text: str, intents: List[Intent], order: Dict[str, int],
                             model_id: Optional[str]) -> Optional[Tuple[Intent, float, str]]:
        """Ask the model for a category; None when the call fails or maps to nothing."""
        if not self.model_client or not model_id or not intents:
            return None

        categories = sorted({intent.category for intent in intents})
        prompt = (
            f"Categories: {', '.join(categories)}\n\n"
            f"Request: {text}\n\n"
            "Respond with ONLY the category name."
        )

        try:
            response = self.model_client.complete(
                model_id, prompt,
                system_prompt=self.config.category_prompt,
                max_tokens=self.config.classification_max_tokens,
                temperature=0.0,
            )
        except Exception as e:
            error = ClassificationError(
                f"Model classification failed: {handle_error(e).message}",
                request_content=text[:100],
            )
            self.logger.warning(error.message)
            return None

        answer = (response.content or "").strip().lower().strip(".'\"` ")
        if not answer:
            return None

        by_rank = sorted(intents, key=lambda intent: (-intent.priority, intent.created_at,
                                                      order.get(intent.key, 0)))
        for intent in by_rank:
            if answer in (intent.category.lower(), intent.key.lower()):
                return intent, 0.95, answer
        for intent in by_rank:
            if intent.category.lower() in answer or intent.key.lower() in answer:
                return intent, 0.85, answer

        self.logger.warning(f"Model answer '{answer}' matches no configured intent")
        return None

    def _fallback(self, intents: List[Intent], available_context: Dict[str, Any]) -> ClassificationResult:
        fallback_key = self.config.fallback_intent
        for intent in intents:
            if intent.key == fallback_key:
                self.logger.info(f"Falling back to intent {fallback_key}")
                return self._result(intent, 0.0, "fallback", [], available_context, {})

        self.logger.info(f"Falling back to unconfigured intent {fallback_key}")
        return ClassificationResult(
            intent_key=fallback_key,
            confidence=0.0,
            category=fallback_key,
            method="fallback",
        )

    def _result(self, intent: Intent, confidence: float, method: str, matched: List[str],
                available_context: Dict[str, Any], metadata: Dict[str, Any]) -> ClassificationResult:
        missing = [need for need in intent.context_needs if need not in available_context]
        return ClassificationResult(
            intent_key=intent.key,
            confidence=confidence,
            category=intent.category,
            method=method,
            matched_keywords=list(matched),
            missing_context=missing,
            metadata=metadata,
        )
