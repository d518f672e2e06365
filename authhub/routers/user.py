from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from .. import credentials, models, oauth2, schemas
from ..database import get_db
from ..errors import ForbiddenError, NotFoundError

router = APIRouter(prefix="/users", tags=["Users"])


def _is_admin(user: models.User) -> bool:
    return user.role == models.UserRole.ADMIN


def require_admin(current_user: models.User = Depends(oauth2.get_current_user)) -> models.User:
    if not _is_admin(current_user):
        raise ForbiddenError("Admin access required", error_code="admin_required")
    return current_user


def _accessible_user(db: Session, id: str, current_user: models.User) -> models.User:
    # Non-admins only ever see themselves, so unknown ids look the same as other users.
    if str(current_user.id) == id:
        return current_user
    if not _is_admin(current_user):
        raise ForbiddenError()
    user = db.query(models.User).filter(models.User.id == id).first()
    if user is None:
        raise NotFoundError()
    return user


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=schemas.UserProfile)
def create_user(
    user: schemas.UserCreate,
    _: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return credentials.register_user(db, user)


@router.get("/", response_model=list[schemas.UserProfile])
def list_users(
    _: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return db.query(models.User).order_by(models.User.created_at.asc()).all()


@router.get("/{id}", response_model=schemas.UserProfile)
def get_user(
    id: str,
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(get_db),
):
    return _accessible_user(db, id, current_user)


@router.patch("/{id}", response_model=schemas.UserProfile)
def update_user(
    id: str,
    payload: schemas.UserUpdate,
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(get_db),
):
    user = _accessible_user(db, id, current_user)
    return credentials.update_user(db, user, payload)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    id: str,
    current_user: models.User = Depends(oauth2.get_current_user),
    db: Session = Depends(get_db),
):
    user = _accessible_user(db, id, current_user)
    credentials.delete_user(db, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
