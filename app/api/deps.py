from fastapi import Request
from app.core.credits import CreditLedger
from app.services.queue_manager import QueueManager

def get_ledger(request: Request) -> CreditLedger:
    """앱 기동 시 생성된 원장 인스턴스"""
    return request.app.state.ledger

def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager
