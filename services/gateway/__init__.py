from .service import TradeGatewayService

__all__ = ["TradeGatewayService"]
