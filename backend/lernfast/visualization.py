from __future__ import annotations
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


VISUALIZATION_TYPES = ("timeline", "comparison", "process", "concept-map")

_TIMELINE_FALLBACK = [
	{"name": "Phase 1", "value": 25},
	{"name": "Phase 2", "value": 55},
	{"name": "Phase 3", "value": 80},
	{"name": "Phase 4", "value": 100},
]
_GENERIC_FALLBACK = [
	{"name": "A", "value": 75},
	{"name": "B", "value": 60},
	{"name": "C", "value": 85},
	{"name": "D", "value": 70},
]


class ThesysNode(BaseModel):
	id: str
	label: str
	type: Literal["concept", "detail", "example", "definition"]


class ThesysEdge(BaseModel):
	from_: str = Field(alias="from")
	to: str
	label: str = ""


class ThesysGraph(BaseModel):
	"""Legacy concept-map payload stored in ``flashcard.thesys_json``."""
	nodes: List[ThesysNode]
	edges: List[ThesysEdge] = []
	layout: Literal["hierarchical", "force-directed"] = "hierarchical"


_NODE_PATTERNS = [
	(re.compile(r"(\w+)\[([^\]\"]+)\]"), "[", "]"),
	(re.compile(r"(\w+)\(([^)\"]+)\)"), "(", ")"),
	(re.compile(r"(\w+)\{([^}\"]+)\}"), "{", "}"),
]
_SPECIAL_CHARS = re.compile(r"[():\-,;!?]")


def sanitize_mermaid_code(code: str) -> str:
	"""Clean up model-written Mermaid source so the client renderer accepts it.

	Literal ``\\n``/``\\t`` escapes become real newlines/indentation, trailing
	whitespace is trimmed per line and node labels containing characters Mermaid
	treats as syntax are wrapped in quotes: ``A[Text (x)]`` -> ``A["Text (x)"]``.
	"""
	sanitized = code.replace("\\n", "\n")
	sanitized = sanitized.replace("\\t", "  ")
	sanitized = "\n".join(line.rstrip() for line in sanitized.split("\n")).strip()

	for pattern, open_bracket, close_bracket in _NODE_PATTERNS:
		def _quote(match: re.Match, open_bracket=open_bracket, close_bracket=close_bracket) -> str:
			node_id, label = match.group(1), match.group(2)
			if _SPECIAL_CHARS.search(label) and not label.strip().startswith('"'):
				return f'{node_id}{open_bracket}"{label.strip()}"{close_bracket}'
			return match.group(0)
		sanitized = pattern.sub(_quote, sanitized)

	return sanitized


def validate_chart_data(chart_data: Any, visualization_type: str) -> List[Dict[str, Any]]:
	"""Return chart points usable by the client, substituting a fallback series when needed."""
	if not isinstance(chart_data, list) or len(chart_data) < 3:
		source = _TIMELINE_FALLBACK if visualization_type == "timeline" else _GENERIC_FALLBACK
		chart_data = [dict(point) for point in source]

	points: List[Dict[str, Any]] = []
	for index, item in enumerate(chart_data):
		item = item if isinstance(item, dict) else {}
		name = item.get("name")
		value = item.get("value")
		if not isinstance(name, str) or not name:
			name = f"Punkt {index + 1}"
		if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
			value = 50
		points.append({"name": name, "value": value})
	return points


def normalize_visualizations(visualizations: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
	result: List[Dict[str, Any]] = []
	for viz in visualizations or []:
		if not isinstance(viz, dict):
			continue
		viz = dict(viz)
		if viz.get("type") == "mermaid" and isinstance(viz.get("code"), str):
			viz["code"] = sanitize_mermaid_code(viz["code"])
		elif "chartData" in viz:
			viz["chartData"] = validate_chart_data(viz.get("chartData"), str(viz.get("type") or ""))
		result.append(viz)
	return result
