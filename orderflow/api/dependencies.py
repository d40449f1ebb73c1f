from fastapi import Depends, Request

from orderflow.application.intake import OrderIntake
from orderflow.application.service import AggregateRegistry, OrderService
from orderflow.auth_local import current_actor
from orderflow.domain.actor import Actor


def get_registry(request: Request) -> AggregateRegistry:
    return request.app.state.registry


async def get_order_service(actor: Actor = Depends(current_actor),
                            registry: AggregateRegistry = Depends(get_registry)) -> OrderService:
    await registry.reap()
    return registry.for_actor(actor)


def get_intake(request: Request, service: OrderService = Depends(get_order_service)) -> OrderIntake:
    return OrderIntake(service, request.app.state.woocommerce, request.app.state.inventory)
