# /crm_dialer/services/flow_repository.py

import logging
from typing import List, Optional
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError

from crm_dialer.models.flow import FlowDefinition

logger = logging.getLogger(__name__)


class FlowRepository:
    """Read access to flow definitions stored by the flow builder."""

    def __init__(self, mongo_uri: str, database: str, collection: str = "integration_flows"):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
            )
            self.db = self.client[database]
            self.collection = self.db[collection]
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def list_active_flows(self) -> List[FlowDefinition]:
        flows: List[FlowDefinition] = []
        cursor = self.collection.find({"is_active": True}).sort("_id", 1)
        async for document in cursor:
            flow = self._to_definition(document)
            if flow is not None:
                flows.append(flow)
        return flows

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        query_ids = [flow_id]
        if ObjectId.is_valid(flow_id):
            query_ids.append(ObjectId(flow_id))
        document = await self.collection.find_one({"_id": {"$in": query_ids}})
        return self._to_definition(document) if document else None

    async def ping(self):
        await self.db.command("ping")

    def close(self):
        self.client.close()

    @staticmethod
    def _to_definition(document: dict) -> Optional[FlowDefinition]:
        try:
            return FlowDefinition.model_validate(document)
        except ValidationError as e:
            logger.error(f"Skipping unreadable flow document {document.get('_id')}: {e}")
            return None
