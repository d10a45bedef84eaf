from aiohttp import web
import json
import asyncio

BROKER_KEY = web.AppKey("broker", object)


def _stats(broker):
    snap = broker.metrics.snapshot()
    snap["topics"] = broker.registry.topic_count
    snap["clients"] = broker.registry.client_count
    snap["subscriptions"] = len(broker.registry)
    return snap


async def stats(request):
    return web.json_response(_stats(request.app[BROKER_KEY]))


async def topics(request):
    return web.json_response(request.app[BROKER_KEY].registry.snapshot())


async def metrics_prom(request):
    snap = _stats(request.app[BROKER_KEY])
    lines = []
    for key in ("uptime_sec", "topics", "clients", "subscriptions"):
        lines.append(f"coapmq_{key} {snap[key]}")
    for key, value in snap.items():
        if key.endswith("_total"):
            lines.append(f"coapmq_{key} {value}")
    for k, v in snap["packet_count"].items():
        lines.append(f'coapmq_packet_count{{type="{k}"}} {v}')
    for k, v in snap["packet_avg_ms"].items():
        lines.append(f'coapmq_packet_avg_ms{{type="{k}"}} {v}')
    for k, v in snap["packet_max_ms"].items():
        lines.append(f'coapmq_packet_max_ms{{type="{k}"}} {v}')
    return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")


# ---------------- Live events (SSE) ----------------
async def events(request):
    """
    Server-Sent Events endpoint.
    Browser connects to /events and receives JSON stats every second.
    """
    resp = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        },
    )
    await resp.prepare(request)

    try:
        while True:
            data = json.dumps(_stats(request.app[BROKER_KEY]))
            await resp.write(f"data: {data}\n\n".encode("utf-8"))
            await asyncio.sleep(1)

    except (asyncio.CancelledError, ConnectionResetError, BrokenPipeError):
        # Client disconnected
        pass

    return resp


def make_app(broker):
    app = web.Application()
    app[BROKER_KEY] = broker

    app.router.add_get("/stats", stats)
    app.router.add_get("/metrics", metrics_prom)
    app.router.add_get("/topics", topics)
    app.router.add_get("/events", events)

    return app
