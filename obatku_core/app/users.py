from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .security import get_db, get_current_user, verify_password, get_password_hash, PasswordPolicy
from . import models, schemas

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=schemas.UserOut)
def me_user(current_user: models.User = Depends(get_current_user)):
    return current_user


@router.post("/change-password")
def change_password(pw: schemas.ChangePasswordIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    if not verify_password(pw.old_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Old password is incorrect")
    ok, errors = PasswordPolicy.validate(pw.new_password)
    if not ok:
        raise HTTPException(status_code=400, detail="; ".join(errors))
    current_user.password_hash = get_password_hash(pw.new_password)
    db.add(current_user)
    db.commit()
    return {"status": "ok", "message": "Password updated"}
