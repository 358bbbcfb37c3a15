import asyncio

from tymelyne.community import CommunityFeed
from tymelyne.optimistic import IN_FLIGHT_MESSAGE

VIEWER = "viewer-1"
AUTHOR = "author-1"

def _seed_posts(client, count):
    return client.seed("posts", [
        {
            "id": f"post-{i}",
            "author_id": AUTHOR,
            "content": f"post number {i}",
            "like_count": 0,
            "comment_count": 0,
            "created_at": f"2024-01-01T00:00:{i:02d}+00:00",
        }
        for i in range(count)
    ])

def _count_selects(client, table):
    calls = []
    original = client.execute

    async def execute(query):
        if query.table == table and query.is_read:
            calls.append(query)
        return await original(query)

    client.execute = execute
    return calls

def test_pages_newest_first(client):
    _seed_posts(client, 7)
    feed = CommunityFeed(client, VIEWER)

    first = asyncio.run(feed.load_more())
    assert first == {"success": True, "loaded": 5}
    assert feed.posts[0].post.id == "post-6"
    assert feed.has_more

    asyncio.run(feed.load_more())
    assert [v.post.id for v in feed.posts][-2:] == ["post-1", "post-0"]
    assert not feed.has_more

def test_like_flags_use_one_query_per_page(client):
    _seed_posts(client, 5)
    client.seed("post_likes", [{"post_id": "post-3", "owner_id": VIEWER}])
    like_reads = _count_selects(client, "post_likes")
    feed = CommunityFeed(client, VIEWER)

    asyncio.run(feed.load_more())

    assert len(like_reads) == 1
    liked = {v.post.id for v in feed.posts if v.is_liked}
    assert liked == {"post-3"}

def test_like_then_unlike_restores_original_state(client):
    _seed_posts(client, 1)
    feed = CommunityFeed(client, VIEWER)
    asyncio.run(feed.load_more())
    view = feed.posts[0]

    liked = asyncio.run(feed.toggle_like("post-0"))
    assert liked == {"success": True, "liked": True, "like_count": 1}
    assert client.rows("posts")[0]["like_count"] == 1

    unliked = asyncio.run(feed.toggle_like("post-0"))
    assert unliked == {"success": True, "liked": False, "like_count": 0}
    assert view.is_liked is False
    assert client.rows("post_likes") == []
    assert client.rows("posts")[0]["like_count"] == 0

def test_failed_like_is_reverted(client):
    _seed_posts(client, 1)
    feed = CommunityFeed(client, VIEWER)
    asyncio.run(feed.load_more())
    client.inject_failure("post_likes", "insert")

    result = asyncio.run(feed.toggle_like("post-0"))

    assert not result["success"]
    assert feed.posts[0].is_liked is False
    assert feed.posts[0].post.like_count == 0

def test_second_click_while_in_flight_is_rejected(slow_client):
    _seed_posts(slow_client, 1)
    feed = CommunityFeed(slow_client, VIEWER)
    asyncio.run(feed.load_more())

    async def double_click():
        return await asyncio.gather(feed.toggle_like("post-0"), feed.toggle_like("post-0"))

    first, second = asyncio.run(double_click())

    assert first["success"]
    assert second == {"success": False, "error": IN_FLIGHT_MESSAGE}
    assert feed.posts[0].is_liked is True
    assert len(slow_client.rows("post_likes")) == 1

def test_response_after_close_is_ignored(slow_client):
    _seed_posts(slow_client, 3)
    feed = CommunityFeed(slow_client, VIEWER)

    async def close_soon():
        await asyncio.sleep(0)
        feed.close()

    async def scenario():
        return await asyncio.gather(feed.load_more(), close_soon())

    result, _ = asyncio.run(scenario())

    assert not result["success"]
    assert feed.posts == []

def test_overlapping_page_loads_do_not_skip_posts(slow_client):
    _seed_posts(slow_client, 15)
    feed = CommunityFeed(slow_client, VIEWER)

    async def scenario():
        first = await asyncio.gather(feed.load_more(), feed.load_more())
        await feed.load_more()
        return first

    first, second = asyncio.run(scenario())

    assert first == {"success": True, "loaded": 5}
    assert second == {"success": False, "error": IN_FLIGHT_MESSAGE}
    assert [v.post.id for v in feed.posts][5:] == [f"post-{i}" for i in range(9, 4, -1)]
    assert feed.has_more


def test_post_content_is_validated(client):
    feed = CommunityFeed(client, VIEWER)

    assert asyncio.run(feed.create_post("   "))["error"] == "Post cannot be empty"
    assert not asyncio.run(feed.create_post("x" * 1001))["success"]
    assert client.rows("posts") == []

def test_new_post_does_not_shift_pagination(client):
    _seed_posts(client, 7)
    feed = CommunityFeed(client, VIEWER)
    asyncio.run(feed.load_more())

    created = asyncio.run(feed.create_post("Hello everyone"))
    asyncio.run(feed.load_more())

    assert created["success"]
    ids = [v.post.id for v in feed.posts]
    assert ids[0] == created["post"].post.id
    assert len(ids) == len(set(ids)) == 8

def test_comments_update_local_count(client):
    _seed_posts(client, 1)
    feed = CommunityFeed(client, VIEWER)
    asyncio.run(feed.load_more())

    assert not asyncio.run(feed.add_comment("post-0", ""))["success"]
    assert not asyncio.run(feed.add_comment("post-0", "y" * 501))["success"]
    added = asyncio.run(feed.add_comment("post-0", "Nice work!"))
    loaded = asyncio.run(feed.load_comments("post-0"))

    assert added["success"]
    assert feed.posts[0].post.comment_count == 1
    assert client.rows("posts")[0]["comment_count"] == 1
    assert [c.content for c in loaded["comments"]] == ["Nice work!"]
