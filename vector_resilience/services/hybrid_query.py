"""
Hybrid text and vector ranking.
"""
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Select, Table, desc, func, select

from vector_resilience.core.config import config
from vector_resilience.core.exceptions import ConfigurationError

WEIGHT_TOLERANCE = 1e-6


class HybridQueryBuilder:
    """
    Weighted sum of full-text relevance and vector similarity.

    Text scores are divided by the best text score of the result set so
    both signals share a 0..1 scale before weighting; items found by only
    one signal score zero for the other.
    """

    def __init__(self, text_weight: Optional[float] = None, vector_weight: Optional[float] = None):
        hybrid_config = config.hybrid_config
        self.text_weight = hybrid_config["text_weight"] if text_weight is None else text_weight
        self.vector_weight = hybrid_config["vector_weight"] if vector_weight is None else vector_weight

        if self.text_weight < 0 or self.vector_weight < 0:
            raise ConfigurationError("Hybrid weights cannot be negative", field="HYBRID_TEXT_WEIGHT")
        if abs(self.text_weight + self.vector_weight - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Hybrid weights must sum to 1.0, got {self.text_weight + self.vector_weight:.3f}",
                field="HYBRID_VECTOR_WEIGHT"
            )

    def combine_scores(
        self,
        text_scores: Mapping[str, float],
        vector_results: Union[Mapping[str, float], Sequence[Dict[str, Any]]],
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Ranked ``{item_id, score, text_score, vector_score}`` entries.

        ``vector_results`` is either ``{item_id: similarity}`` or the list
        returned by ``search_similar_vectors``.
        """
        if isinstance(vector_results, Mapping):
            vector_scores = dict(vector_results)
        else:
            vector_scores = {result["item_id"]: result["similarity"] for result in vector_results}

        max_text = max(text_scores.values(), default=0.0)
        ranked = []
        for item_id in set(text_scores) | set(vector_scores):
            text_score = text_scores.get(item_id, 0.0) / max_text if max_text > 0 else 0.0
            vector_score = vector_scores.get(item_id, 0.0)
            ranked.append({
                "item_id": item_id,
                "score": round(self.text_weight * text_score + self.vector_weight * vector_score, 6),
                "text_score": round(text_score, 6),
                "vector_score": round(vector_score, 6),
            })

        ranked.sort(key=lambda entry: (-entry["score"], entry["item_id"]))
        return ranked[:limit] if limit is not None else ranked

    def build_query(
        self,
        table: Table,
        query_vector: Sequence[float],
        query_text: str,
        limit: int = 10,
        fts_config: str = "english"
    ) -> Select:
        """
        PostgreSQL query scoring a pgvector table by
        ``text_weight * ts_rank + vector_weight * (1 - cosine distance)``.
        Rows without an embedding keep their text score.
        """
        ts_query = func.plainto_tsquery(fts_config, query_text)
        text_score = func.ts_rank(func.to_tsvector(fts_config, table.c.text_content), ts_query)
        vector_score = func.coalesce(1.0 - table.c.embedding.cosine_distance(list(query_vector)), 0.0)
        hybrid_score = self.text_weight * text_score + self.vector_weight * vector_score

        return (
            select(
                table.c.item_id,
                table.c.text_content,
                text_score.label("text_score"),
                vector_score.label("vector_score"),
                hybrid_score.label("hybrid_score"),
            )
            .order_by(desc("hybrid_score"), table.c.item_id)
            .limit(limit)
        )
