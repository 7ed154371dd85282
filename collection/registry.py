from database import queries as db_queries
from collection.errors import InvalidContainer, PlantNotFound
from collection.models import ContainerRecord, PlantRecord


class ContainerRegistry:
    """Lookup of waste containers known to the system."""

    async def resolve(self, container_refs: list[str]) -> dict[str, ContainerRecord]:
        rows = await db_queries.get_containers(container_refs)
        return {
            row['container_ref']: ContainerRecord(
                container_ref=row['container_ref'],
                company_id=row['company_id'],
                waste_type=row['waste_type'],
                latitude=row['latitude'],
                longitude=row['longitude'],
            )
            for row in rows
        }

    async def require(self, container_refs: list[str]) -> dict[str, ContainerRecord]:
        """Resolves every ref or fails with InvalidContainer listing the unknown ones."""
        found = await self.resolve(container_refs)
        unknown = [ref for ref in container_refs if ref not in found]
        if unknown:
            raise InvalidContainer(f"Unknown containers: {', '.join(unknown)}", unknown=unknown)
        return found


class PlantRegistry:
    """Lookup of registered incineration plants and their on-duty operator."""

    async def get(self, plant_id: str) -> PlantRecord:
        row = await db_queries.get_plant(plant_id)
        if row is None:
            raise PlantNotFound(f"Incineration plant {plant_id} not found", plant_id=plant_id)
        return PlantRecord(
            plant_id=row['plant_id'],
            name=row['name'],
            operator_name=row['operator_name'],
            operator_phone=row['operator_phone'],
        )

    async def list_active(self) -> list[PlantRecord]:
        rows = await db_queries.get_active_plants()
        return [
            PlantRecord(row['plant_id'], row['name'], row['operator_name'], row['operator_phone'])
            for row in rows
        ]
