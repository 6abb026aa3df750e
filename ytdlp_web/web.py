"""
The aiohttp front end: JSON job API, server-sent events and file delivery.

Handlers stay thin; every decision is made by the DownloadOrchestrator.
"""
import asyncio
import json
import logging
from pathlib import Path
from urllib.parse import quote

from aiohttp import web

from ._version import __version__
from .broadcaster import ALL
from .constants import STATIC_DIR
from .controller import DownloadOrchestrator
from .exceptions import InvalidRequestError, InvalidTransitionError, JobNotFoundError, SchedulerStoppedError
from .jobs import DownloadJob, JobStatus

ORCHESTRATOR_KEY = web.AppKey('orchestrator', DownloadOrchestrator)
HEARTBEAT_INTERVAL = 15.0

logger = logging.getLogger(__name__)
routes = web.RouteTableDef()


def json_error(status: int, message: str) -> web.Response:
    return web.json_response({'error': message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Maps orchestrator errors onto HTTP status codes."""
    try:
        return await handler(request)
    except InvalidRequestError as e:
        return json_error(400, str(e))
    except JobNotFoundError as e:
        return json_error(404, str(e))
    except InvalidTransitionError as e:
        return json_error(409, str(e))
    except SchedulerStoppedError as e:
        return json_error(503, str(e))


def get_orchestrator(request: web.Request) -> DownloadOrchestrator:
    return request.app[ORCHESTRATOR_KEY]


async def read_json_object(request: web.Request) -> dict:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise InvalidRequestError("Request body must be valid JSON.")
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object.")
    return payload


@routes.get('/health')
async def healthcheck(request: web.Request) -> web.Response:
    return web.Response(text='OK')


@routes.get('/')
async def index(request: web.Request) -> web.FileResponse:
    return web.FileResponse(STATIC_DIR / 'index.html')


@routes.get('/api/info')
async def service_info(request: web.Request) -> web.Response:
    return web.json_response(get_orchestrator(request).info())


@routes.put('/api/concurrency')
async def update_concurrency(request: web.Request) -> web.Response:
    payload = await read_json_object(request)
    limit = get_orchestrator(request).set_concurrency(payload.get('max_concurrent_downloads'))
    return web.json_response({'max_concurrent_downloads': limit})


@routes.post('/api/jobs/clear')
async def clear_finished(request: web.Request) -> web.Response:
    removed = await get_orchestrator(request).clear_finished()
    return web.json_response({'removed': removed})


@routes.post('/api/jobs')
async def submit_job(request: web.Request) -> web.Response:
    payload = await read_json_object(request)
    job_id = await get_orchestrator(request).submit(payload.get('url', ''), payload.get('options'))
    return web.json_response({'job_id': job_id, 'status': JobStatus.QUEUED.value}, status=202)


@routes.get('/api/jobs')
async def list_jobs(request: web.Request) -> web.Response:
    jobs = [job.to_dict() for job in get_orchestrator(request).list_jobs()]
    return web.json_response({'jobs': jobs})


@routes.get('/api/jobs/{job_id}')
async def job_status(request: web.Request) -> web.Response:
    job = get_orchestrator(request).get_status(request.match_info['job_id'])
    return web.json_response(job.to_dict())


@routes.delete('/api/jobs/{job_id}')
async def cancel_job(request: web.Request) -> web.Response:
    job = await get_orchestrator(request).cancel(request.match_info['job_id'])
    return web.json_response(job.to_dict())


@routes.post('/api/jobs/{job_id}/retry')
async def retry_job(request: web.Request) -> web.Response:
    job_id = await get_orchestrator(request).retry(request.match_info['job_id'])
    return web.json_response({'job_id': job_id, 'status': JobStatus.QUEUED.value}, status=202)


@routes.delete('/api/jobs/{job_id}/record')
async def evict_job(request: web.Request) -> web.Response:
    await get_orchestrator(request).evict(request.match_info['job_id'])
    return web.Response(status=204)


@routes.get('/api/jobs/{job_id}/file')
async def job_file(request: web.Request) -> web.StreamResponse:
    orchestrator = get_orchestrator(request)
    job = orchestrator.get_status(request.match_info['job_id'])
    if job.status is not JobStatus.COMPLETED:
        raise InvalidTransitionError(f"Job {job.id} is {job.status.value}; no file is available.")
    return attachment_response(job, orchestrator.config.output_dir)


@routes.get('/api/events')
async def stream_events(request: web.Request) -> web.StreamResponse:
    """Streams job events as server-sent events until the subscription ends."""
    scope = request.query.get('job_id') or ALL
    subscription = get_orchestrator(request).stream_events(scope)

    response = web.StreamResponse(headers={
        'Content-Type': 'text/event-stream',
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no',
    })
    await response.prepare(request)

    async with subscription:
        events = subscription.__aiter__()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(events.__anext__(), timeout=HEARTBEAT_INTERVAL)
                except asyncio.TimeoutError:
                    await response.write(b': keep-alive\n\n')
                    continue
                except StopAsyncIteration:
                    break
                data = json.dumps(event.to_dict())
                await response.write(f"id: {event.job_id}:{event.job.revision}\ndata: {data}\n\n".encode('utf-8'))
            await response.write_eof()
        except ConnectionError:
            logger.debug(f"Event stream client for '{scope}' disconnected.")
    return response


@routes.get('/api/download')
async def download_video(request: web.Request) -> web.StreamResponse:
    """
    Downloads a URL in one request: submit, wait for completion, then send the file.

    Kept for clients that just want the file and do not track jobs.
    """
    orchestrator = get_orchestrator(request)
    job_id = await orchestrator.submit(request.query.get('url', ''))
    job = await orchestrator.wait_for(job_id)
    if job.status is not JobStatus.COMPLETED:
        logger.error(f"Error when downloading video for job {job_id}: {job.error or job.status.value}")
        return web.Response(status=500, text='Error downloading video stream')
    return attachment_response(job, orchestrator.config.output_dir)


def attachment_response(job: DownloadJob, output_dir: Path) -> web.StreamResponse:
    """Sends a completed job's file as an attachment."""
    path = Path(job.output_path)
    try:
        inside_output = path.resolve().is_relative_to(output_dir.resolve())
    except OSError:
        inside_output = False
    if not inside_output or not path.is_file():
        return json_error(404, "The downloaded file is no longer available.")

    filename = quote(path.name) if path.name else 'video'
    return web.FileResponse(path, headers={
        'Content-Disposition': f"attachment; filename={filename}; filename*=UTF-8''{filename}",
        'Content-Type': 'application/octet-stream',
    })


async def _start_orchestrator(app: web.Application):
    await app[ORCHESTRATOR_KEY].start()


async def _stop_orchestrator(app: web.Application):
    await app[ORCHESTRATOR_KEY].stop()


def create_app(orchestrator: DownloadOrchestrator, manage_lifecycle: bool = True) -> web.Application:
    """
    Builds the aiohttp application around an orchestrator.

    Args:
        orchestrator: The orchestrator serving all requests.
        manage_lifecycle: Start and stop the orchestrator with the application.
    """
    app = web.Application(middlewares=[error_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator
    app.add_routes(routes)
    app.router.add_static('/static', STATIC_DIR)
    if manage_lifecycle:
        app.on_startup.append(_start_orchestrator)
        app.on_shutdown.append(_stop_orchestrator)
    logger.debug(f"Created web application (version {__version__}).")
    return app
