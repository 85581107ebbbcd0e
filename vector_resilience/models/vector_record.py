"""
Vector index models.
IndexDescriptor identifies a vector index and its configuration;
VectorRecord is one stored item.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vector_resilience.core.config import config

SUPPORTED_METRICS = ("cosine", "l2", "inner_product")
SUPPORTED_METHODS = ("ivfflat", "hnsw")


@dataclass
class VectorRecord:
    """
    One item's vector. ``embedding`` of None is a text-only record; it
    counts as missing, never as corrupted.
    """
    item_id: str
    embedding: Optional[List[float]]
    text_content: str = ""
    index_name: str = ""

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


@dataclass
class IndexDescriptor:
    """Identity and configuration of one vector index."""
    index_name: str
    dimension: int = field(default_factory=lambda: config.vector_index_config["dimension"])
    metric: str = field(default_factory=lambda: config.vector_index_config["metric"])
    method: str = field(default_factory=lambda: config.vector_index_config["method"])
    method_params: Dict[str, Any] = field(default_factory=dict)
    table_prefix: str = "search_api_"
    source_table: Optional[str] = None
    source_id_column: str = "id"

    @property
    def table_name(self) -> str:
        safe = re.sub(r"[^a-z0-9_]", "_", self.index_name.lower())
        return f"{self.table_prefix}{safe}_vectors"

    @property
    def ann_index_name(self) -> str:
        return f"{self.table_name}_embedding_idx"

    def resolved_method_params(self) -> Dict[str, Any]:
        """Method parameters with configured defaults filled in."""
        index_config = config.vector_index_config
        if self.method == "hnsw":
            defaults = {"m": index_config["hnsw_m"], "ef_construction": index_config["hnsw_ef_construction"]}
        else:
            defaults = {"lists": index_config["ivfflat_lists"]}
        return {**defaults, **self.method_params}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index_name": self.index_name,
            "table_name": self.table_name,
            "dimension": self.dimension,
            "metric": self.metric,
            "method": self.method,
            "method_params": self.resolved_method_params(),
            "source_table": self.source_table,
        }
