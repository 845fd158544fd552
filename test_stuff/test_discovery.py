from conftest import FakeSite, FakePage

from sitecapture.discovery import discover_links, scroll_to_bottom

ORIGIN = "https://example.com"
VIEWPORT = {"width": 800, "height": 600}


async def open_page(site, url):
    page = FakePage(site, VIEWPORT)
    await page.goto(url)
    return page


async def test_collects_same_origin_links_in_first_seen_order():
    site = FakeSite().add("https://example.com/", links=[
        "/about",
        "https://other.com/x",
        "pricing?ref=nav",
        "/about#team",
        "/pricing?ref=footer",
        "mailto:hi@example.com",
        "/blog",
    ])
    page = await open_page(site, "https://example.com/")

    links = await discover_links(page, ORIGIN, 10, scroll_delay=0)

    assert links == [
        "https://example.com/about",
        "https://example.com/pricing",
        "https://example.com/blog",
    ]


async def test_truncates_to_max_links():
    site = FakeSite().add("https://example.com/", links=[f"/p{i}" for i in range(20)])
    page = await open_page(site, "https://example.com/")

    links = await discover_links(page, ORIGIN, 5, scroll_delay=0)

    assert links == [f"https://example.com/p{i}" for i in range(5)]


async def test_no_qualifying_links_yields_seed():
    site = FakeSite().add("https://example.com/start", links=["https://elsewhere.org/", "javascript:go()"])
    page = await open_page(site, "https://example.com/start")

    links = await discover_links(page, ORIGIN, 5, seed_url="https://example.com/start?utm=1", scroll_delay=0)

    assert links == ["https://example.com/start"]


async def test_zero_cap_returns_nothing():
    site = FakeSite().add("https://example.com/", links=["/a"])
    page = await open_page(site, "https://example.com/")

    assert await discover_links(page, ORIGIN, 0) == []


async def test_discovery_does_not_navigate():
    site = FakeSite().add("https://example.com/", links=["/a", "/b"])
    page = await open_page(site, "https://example.com/")

    await discover_links(page, ORIGIN, 5, scroll_delay=0)

    assert page.url == "https://example.com/"
    assert site.visits == ["https://example.com/"]
    assert page.scroll_y == 0


async def test_scroll_stops_when_position_stops_advancing():
    site = FakeSite().add("https://example.com/", height=1600)
    page = await open_page(site, "https://example.com/")

    steps = await scroll_to_bottom(page, distance=400, delay_ms=0)

    # 600 -> 1000 limit: 400, 800, 1000, then no movement
    assert steps == 4
    assert page.scroll_y == 0


async def test_scroll_is_capped_on_endless_pages():
    site = FakeSite().add("https://example.com/feed", height=10_000_000)
    page = await open_page(site, "https://example.com/feed")

    steps = await scroll_to_bottom(page, distance=400, delay_ms=0, max_iterations=7)

    assert steps == 7
    assert page.scroll_steps == 7
