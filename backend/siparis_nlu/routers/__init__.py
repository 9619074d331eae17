"""HTTP uçları; main.create_app bu sırayla kaydeder."""
from .system import router as system_router                 # /health, /version
from .menu import router as menu_router                     # /menu/publish, /menu/index
from .conversations import router as conversations_router   # /conversations/*
from .nlu import router as nlu_router                       # /nlu/*

all_routers = [system_router, menu_router, conversations_router, nlu_router]
