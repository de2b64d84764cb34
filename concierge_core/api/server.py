"""HTTP 入口模块。

基于 FastAPI 暴露会话的增删查接口，以及把编排器事件以 SSE 形式推给前端的 /api/chat/send；
main() 解析命令行参数后用 uvicorn 启动服务。
"""

import argparse
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from concierge_core.agents.orchestrator import TurnOrchestrator
from concierge_core.api import service
from concierge_core.config.settings import settings
from concierge_core.domain.exceptions import BusinessError
from concierge_core.infrastructure.logging.logger import logger


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId", description="Conversation to continue.")
    message: str = Field(..., description="User message to send to the model.")

    @field_validator("conversation_id", "message")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


def create_app(agent: Optional[TurnOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="Concierge Chat", version="0.1.0")
    app.state.agent = agent or service.get_default_agent()

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.http_status)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/chat/create")
    async def create_conversation():
        return await service.create_conversation(app.state.agent)

    @app.get("/api/chat/conversations")
    async def list_conversations():
        return await service.list_conversations(app.state.agent)

    @app.get("/api/chat/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        return await service.get_conversation_messages(app.state.agent, conversation_id)

    @app.delete("/api/chat/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(conversation_id: str):
        await service.delete_conversation(app.state.agent, conversation_id)
        return Response(status_code=204)

    @app.post("/api/chat/send")
    async def send(request: SendRequest):
        agent: TurnOrchestrator = app.state.agent
        # 会话不存在时在开始推流之前返回 404
        await agent.store.get_conversation(request.conversation_id)
        events = agent.send_message(request.conversation_id, request.message)
        return StreamingResponse(
            service.relay_sse(events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the concierge chat service with streaming responses.")
    parser.add_argument("--host", default=settings.server_host, help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=settings.server_port, help="Port to bind.")
    parser.add_argument("--log-level", default="info", help="uvicorn log level.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app()
    logger.log(logging.INFO, "Starting concierge service", extra={"extra": {"host": args.host, "port": args.port}})
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
