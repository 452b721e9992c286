import asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import AsyncSessionLocal, engine
from app import crud, models
from app.rooms import RoomDirectory, parse_private_room_id
from app.settings import settings

async def fix_rooms(db: AsyncSession, directory: RoomDirectory) -> int:
    """Mark private_<a>_<b> rooms private, rename raw-id ones, ensure the global room."""
    fixed = 0
    for room in await crud.get_rooms(db):
        if parse_private_room_id(room.id) is None:
            continue
        if room.is_private and room.name not in ("", room.id):
            continue
        # resolve() forces the private flag and regenerates a raw-id name
        repaired = await directory.resolve(db, room.id, is_private=True)
        print(f"Fixed private room {repaired.id} ({repaired.name})")
        fixed += 1

    general = await directory.resolve(
        db, settings.GENERAL_ROOM_ID, name=settings.GENERAL_ROOM_NAME, is_private=False
    )
    if general.name != settings.GENERAL_ROOM_NAME:
        general = await crud.update_room(db, general.id, name=settings.GENERAL_ROOM_NAME)
    print(f"Global room: {general.id} ({general.name})")
    return fixed

async def fix_rooms_script():
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        try:
            fixed = await fix_rooms(db, RoomDirectory(settings.GENERAL_ROOM_ID))
            print(f"✅ {fixed} private room(s) repaired")
        except Exception as e:
            print(f"❌ An error occurred: {e}")
            await db.rollback()
            raise

if __name__ == "__main__":
    asyncio.run(fix_rooms_script())
