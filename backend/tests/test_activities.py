"""Activity implementations and the product repository."""

import pytest

from support import FixedReviewSource, ScriptedScorer

from sentiment_workflow.executor import ActivityExecution, ActivityInfo
from sentiment_workflow.kv_store import InMemoryKeyValueStore, ProductRepository
from sentiment_workflow.reviews import SyntheticReviewSource, sentiment_for_rating
from sentiment_workflow.workflow import ActivityContext, build_activity_map
from sentiment_workflow.workflow.exceptions import TerminalActivityError

WORKFLOW_ID = "sentiment-analysis-Widget-1700000000000"


def _execution(step="step", activity="activity"):
    return ActivityExecution(ActivityInfo(workflow_id=WORKFLOW_ID, step=step, activity=activity))


@pytest.fixture
def products():
    return ProductRepository(InMemoryKeyValueStore())


@pytest.fixture
def activities(products):
    context = ActivityContext(products, FixedReviewSource(2), ScriptedScorer([3.5]))
    return build_activity_map(context)


@pytest.mark.asyncio
async def test_register_product_id_is_stable_per_workflow(activities, products):
    first = await activities["register_product"](_execution(), "Widget")
    again = await activities["register_product"](_execution(), "Widget")

    assert first == again == ActivityContext.product_id_for(WORKFLOW_ID)
    assert await products.get_product_name(first) == "Widget"


@pytest.mark.asyncio
async def test_fetch_reviews_returns_wire_shaped_dicts(activities):
    reviews = await activities["fetch_reviews"](_execution(), "Widget")

    assert len(reviews) == 2
    assert reviews[0]["text"] == "review 0"
    assert "purchaseDate" in reviews[0]


@pytest.mark.asyncio
async def test_score_sentiment_heartbeats(activities):
    execution = _execution()

    score = await activities["score_sentiment"](execution, "great phone")

    assert score == 3.5
    assert execution.heartbeat_count == 2


@pytest.mark.asyncio
async def test_aggregate_averages_and_stores(activities, products):
    result = await activities["aggregate_and_store"](_execution(), "product-1", [2, 4, 6, 8])

    assert result == {"product_id": "product-1", "average_score": 5.0, "total_reviews": 4}
    assert await products.get_score("product-1") == 5.0


@pytest.mark.asyncio
async def test_aggregate_rerun_stores_same_value(activities, products):
    await activities["aggregate_and_store"](_execution(), "product-1", [1.0, 2.0])
    await activities["aggregate_and_store"](_execution(), "product-1", [1.0, 2.0])

    assert await products.get_score("product-1") == 1.5


@pytest.mark.asyncio
async def test_aggregate_without_scores_is_terminal(activities, products):
    with pytest.raises(TerminalActivityError) as info:
        await activities["aggregate_and_store"](_execution(), "product-1", [])

    assert info.value.failure.error_type == "no_scores"
    assert await products.get_score("product-1") is None


@pytest.mark.asyncio
async def test_repository_key_scheme():
    store = InMemoryKeyValueStore()
    products = ProductRepository(store)

    await products.save_product("p-1", "Widget")
    await products.save_score("p-1", 7.25)

    assert await store.get("p-1") == "Widget"
    assert await store.get("score:p-1") == "7.25"
    assert await products.get_score("missing") is None


@pytest.mark.asyncio
async def test_kv_ttl_expires():
    now = [100.0]
    store = InMemoryKeyValueStore(clock=lambda: now[0])

    await store.set("key", "value", ttl_seconds=5)
    assert await store.get("key") == "value"

    now[0] += 5
    assert await store.get("key") is None


def test_synthetic_reviews_are_newest_first():
    reviews = SyntheticReviewSource(5, delay_seconds=0).generate("Widget")

    assert sorted(review.id for review in reviews) == [1, 2, 3, 4, 5]
    assert all(1 <= review.rating <= 5 for review in reviews)
    assert [review.date for review in reviews] == sorted(
        (review.date for review in reviews), reverse=True
    )
    assert all("{product}" not in review.text for review in reviews)


def test_rating_maps_to_sentiment():
    assert sentiment_for_rating(5) == "positive"
    assert sentiment_for_rating(3) == "neutral"
    assert sentiment_for_rating(1) == "negative"
