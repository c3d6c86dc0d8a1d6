from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from . import models, schemas
from .security import (
    get_db, verify_password, get_password_hash, create_access_token,
    require_role, PasswordPolicy, RateLimiter, SecurityAuditLog, ROLE_PERMISSIONS
)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=schemas.Token)
async def login(request: Request, db: Session = Depends(get_db)):
    """Accept either form-encoded (OAuth2) login or JSON {username,password} for scanner apps."""
    ctype = (request.headers.get("content-type") or "").lower()
    username = None
    password = None

    if "application/json" in ctype:
        try:
            body = await request.json()
            username = body.get("username")
            password = body.get("password")
        except ValueError:
            pass
    else:
        form = await request.form()
        username = form.get("username")
        password = form.get("password")

    if not username or not password:
        raise HTTPException(status_code=400, detail="Missing username or password")

    client_ip = request.client.host if request.client else None
    limiter_key = f"login:{username}"
    allowed, _ = RateLimiter.check_rate_limit(limiter_key)
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many login attempts, try again later")

    user = db.query(models.User).filter(models.User.username == username).first()
    if not user or not verify_password(password, user.password_hash):
        RateLimiter.record_attempt(limiter_key)
        SecurityAuditLog.log_login_attempt(db, username, False, client_ip, "bad credentials")
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    if not user.is_active:
        raise HTTPException(status_code=400, detail="User account is disabled")

    RateLimiter.reset(limiter_key)
    SecurityAuditLog.log_login_attempt(db, username, True, client_ip)
    access_token = create_access_token({"sub": user.username, "role": user.role})
    return {"access_token": access_token, "token_type": "bearer", "role": user.role}


@router.post("/register", response_model=schemas.UserOut)
def register(user_in: schemas.UserCreate, db: Session = Depends(get_db), current_user: models.User = Depends(require_role("Admin"))):
    if user_in.role not in ROLE_PERMISSIONS:
        raise HTTPException(status_code=400, detail=f"Unknown role {user_in.role}")
    ok, errors = PasswordPolicy.validate(user_in.password)
    if not ok:
        raise HTTPException(status_code=400, detail="; ".join(errors))
    existing = db.query(models.User).filter((models.User.username == user_in.username) | (models.User.email == user_in.email)).first()
    if existing:
        raise HTTPException(status_code=400, detail="User with that username or email already exists")
    hashed = get_password_hash(user_in.password)
    user = models.User(full_name=user_in.full_name, email=user_in.email, username=user_in.username, password_hash=hashed, role=user_in.role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
