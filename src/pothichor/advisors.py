from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional, Sequence

from .errors import DependencyError
from .llm_client import ChatCompletionsClient
from .models import FoodItem, Meal

logger = logging.getLogger(__name__)

NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
NON_VEG_TAGS = {"non-veg", "nonveg", "non-vegetarian", "non vegetarian", "meat", "chicken", "fish", "egg"}
VEG_TAGS = {"veg", "vegetarian", "vegan"}


class NutritionAdvisor:
    """
    Estimates calories, protein and a vegetarian flag for a free-text food item.

    ``annotate`` never raises: when the model is unavailable, slow, or answers with
    something that is not JSON, the item keeps its name and gets zeroed nutrition with
    an unknown vegetarian flag.
    """

    SYSTEM_PROMPT = """
You estimate nutrition for one serving of a home-cooked food item.
Always respond with valid JSON only:
{"calories": number, "protein": number, "vegetarian": true|false}
- calories is kcal for a typical single serving.
- protein is grams.
- vegetarian is false when the item contains meat, fish or egg.
"""

    def __init__(self, llm_client: ChatCompletionsClient | None):
        self.llm_client = llm_client

    def annotate(self, name: str) -> FoodItem:
        try:
            return self.estimate(name)
        except DependencyError as exc:
            logger.warning("Nutrition estimate for %r unavailable; using zeroed values: %s", name, exc)
            return FoodItem(name=name)

    def estimate(self, name: str) -> FoodItem:
        if self.llm_client is None:
            raise DependencyError("nutrition advisor is not configured")
        response = self.llm_client.chat(
            [{"role": "user", "content": f"Food item: {name}"}],
            system_prompt=self.SYSTEM_PROMPT.strip(),
            response_format={"type": "json_object"},
        )
        payload = _parse_json_object(response)
        if not payload:
            raise DependencyError(f"nutrition advisor returned non-JSON text: {response[:120]!r}")
        return FoodItem(
            name=name,
            calories=_number(payload.get("calories")),
            protein=_number(payload.get("protein", payload.get("protein_grams"))),
            is_veg=_veg_flag(payload),
        )


class QueryAdvisor:
    """Answers a natural-language question by picking the relevant meals from the catalog."""

    SYSTEM_PROMPT = """
You help students choose a home-cooked meal. You receive a question and a JSON list of
meals currently open for ordering. Return only a JSON array with the "id" values of the
meals that answer the question. Return [] when nothing fits.
"""

    def __init__(self, llm_client: ChatCompletionsClient | None):
        self.llm_client = llm_client

    def select(self, question: str, meals: Sequence[Meal]) -> List[Meal]:
        if not meals:
            return []
        if self.llm_client is None:
            raise DependencyError("query advisor is not configured")
        prompt = (
            f"Question: {question.strip()}\n\n"
            f"Meals:\n{json.dumps([_describe_meal(meal) for meal in meals], indent=2)}"
        )
        response = self.llm_client.chat(
            [{"role": "user", "content": prompt}],
            system_prompt=self.SYSTEM_PROMPT.strip(),
        )
        wanted = _parse_id_list(response)
        if wanted is None:
            raise DependencyError(f"query advisor returned unusable text: {response[:120]!r}")
        chosen = set(wanted)
        return [meal for meal in meals if meal.id in chosen]


def _describe_meal(meal: Meal) -> dict[str, Any]:
    return {
        "id": meal.id,
        "title": meal.title,
        "price": meal.price,
        "pickup_time": meal.pickup_time.isoformat(),
        "order_deadline": meal.order_deadline.isoformat(),
        "remaining": meal.remaining,
        "food_items": meal.food_item_names,
        "total_calories": meal.total_calories,
        "total_protein": meal.total_protein,
        "vegetarian": meal.is_veg,
        "area": meal.house_location.area if meal.house_location else None,
        "house": meal.house_name,
    }


def _parse_json_object(text: str) -> dict:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1:
        return {}
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_id_list(text: str) -> Optional[List[str]]:
    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end != -1:
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return [str(item) for item in data if isinstance(item, (str, int))]
    payload = _parse_json_object(text)
    ids = payload.get("ids") or payload.get("meal_ids")
    if isinstance(ids, list):
        return [str(item) for item in ids]
    return None


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    if isinstance(value, str):
        match = NUMBER_RE.search(value)
        if match:
            return max(0.0, float(match.group(0)))
    return 0.0


def _veg_flag(payload: dict) -> Optional[bool]:
    for key in ("vegetarian", "is_veg", "isVeg", "veg"):
        value = payload.get(key)
        if isinstance(value, bool):
            return value
    tags = payload.get("tags")
    if isinstance(tags, list):
        lowered = {str(tag).strip().lower() for tag in tags}
        if lowered & NON_VEG_TAGS:
            return False
        if lowered & VEG_TAGS:
            return True
    return None
