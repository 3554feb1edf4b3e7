"""
WebSocket Endpoints

- /ws/lanes/{lane_id}：lane kiosk 與員工端訂閱同一條 lane 的 SESSION_UPDATED
- /ws/checkout：員工端訂閱退房事件

Broadcaster 在同步的 request thread 裡 publish，這裡用
loop.call_soon_threadsafe 把事件丟進連線自己的 asyncio.Queue。
"""
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from typing import Any, Dict
import asyncio
import logging

from database import get_db
from core.broadcaster import CHECKOUT_CHANNEL, broadcaster, lane_channel
from core.exceptions import LaneSessionNotFound
from core.lane_manager import LaneSessionManager
from services.snapshot_service import build_session_snapshot

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


async def _pump(websocket: WebSocket, channel: str, first_event: Dict[str, Any]):
    """
    把頻道上的事件轉送給這條連線，直到客戶端斷線

    流程：
    1. 訂閱頻道（callback 只負責把事件丟進 queue）
    2. 送出 first_event，客戶端收到後即可確定已經訂閱
    3. 同時等待「queue 有事件」與「客戶端斷線」
    4. 斷線時取消訂閱
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    # 1. 訂閱
    unsubscribe = broadcaster.subscribe(
        channel, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
    )
    try:
        # 2. 第一個事件
        await websocket.send_json(first_event)

        # 3. 轉送
        async def forward():
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        async def drain():
            while True:
                await websocket.receive_text()

        tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            error = task.exception()
            if error and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"WebSocket on {channel} closed with error: {error}")
    except WebSocketDisconnect:
        pass
    finally:
        # 4. 取消訂閱
        unsubscribe()
        logger.info(f"WebSocket on {channel} disconnected")


@router.websocket("/ws/lanes/{lane_id}")
async def lane_updates(websocket: WebSocket, lane_id: str, db: Session = Depends(get_db)):
    """
    訂閱一條 lane 的 snapshot

    連線後先送出目前的 snapshot（lane 上沒有 session 時送 SUBSCRIBED），
    之後每次 commit 都會收到 SESSION_UPDATED。
    """
    await websocket.accept()

    try:
        session = LaneSessionManager.latest_session(db, lane_id)
        _, payload = build_session_snapshot(db, session.id)
        first_event = {"type": "SESSION_UPDATED", "payload": payload}
    except LaneSessionNotFound:
        first_event = {"type": "SUBSCRIBED", "payload": {"laneId": lane_id}}
    finally:
        db.close()

    logger.info(f"WebSocket subscribed to lane {lane_id}")
    await _pump(websocket, lane_channel(lane_id), first_event)


@router.websocket("/ws/checkout")
async def checkout_updates(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket subscribed to checkout events")
    await _pump(websocket, CHECKOUT_CHANNEL, {"type": "SUBSCRIBED", "payload": {"channel": CHECKOUT_CHANNEL}})
