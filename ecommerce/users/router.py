import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ecommerce.database import get_db
from ecommerce.dependencies import get_message_bus
from ecommerce.errors import TransportError
from ecommerce.messaging.bus import MessageBus
from ecommerce.users import service as user_service
from ecommerce.users.schemas import LoginRequest, LoginResponse, RegisterRequest, UserResponse, UserUpdate

router = APIRouter(prefix="/api/users", tags=["users"])

@router.post("/register", response_model=LoginResponse)
async def register(
    data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    bus: MessageBus = Depends(get_message_bus),
):
    try:
        response = await user_service.register_user(db, bus, data)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered")
    except TransportError:
        raise HTTPException(status_code=503, detail="Event bus unavailable, registration not completed")
    if response is None:
        raise HTTPException(status_code=400, detail="Email already registered")
    return response

@router.post("/login", response_model=LoginResponse)
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await user_service.authenticate(db, data)
    except user_service.AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc))

@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    user = await user_service.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user

@router.put("/{user_id}", status_code=204)
async def update_user(user_id: uuid.UUID, data: UserUpdate, db: AsyncSession = Depends(get_db)):
    updated = await user_service.update_user(db, user_id, data)
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
