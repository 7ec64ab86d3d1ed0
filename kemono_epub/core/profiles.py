import os
import yaml
import re
from typing import List, Optional
from ..models import log, SiteProfile

BUILTIN_PROFILES = [
    SiteProfile(name="kemono.cr", domain_patterns=[r"\bkemono\.cr\b"]),
    SiteProfile(
        name="kemono.su",
        domain_patterns=[r"\bkemono\.su\b"],
        api_base_url="https://kemono.su/api/v1",
        site_base_url="https://kemono.su",
        data_base_url="https://kemono.su/data",
        icon_base_url="https://img.kemono.su",
        api_delay=1.0,
    ),
    SiteProfile(
        name="coomer.st",
        domain_patterns=[r"\bcoomer\.(st|su)\b"],
        api_base_url="https://coomer.st/api/v1",
        site_base_url="https://coomer.st",
        data_base_url="https://coomer.st/data",
        icon_base_url="https://img.coomer.st",
    ),
]

_PROFILE_FIELDS = ("api_base_url", "site_base_url", "data_base_url", "icon_base_url")


class ProfileManager:
    _instance = None

    def __init__(self, config_paths: List[str] = None, include_builtin: bool = True):
        self.profiles: List[SiteProfile] = []
        if config_paths:
            for path in config_paths:
                self.load_config(path)
        # Loaded profiles win over the built-in ones
        if include_builtin:
            self.profiles.extend(BUILTIN_PROFILES)

    @classmethod
    def get_instance(cls):
        if not cls._instance:
            paths = ["sites.yaml", os.path.expanduser("~/.config/kemono_epub/sites.yaml")]
            cls._instance = cls(paths)
        return cls._instance

    def load_config(self, path: str, prepend: bool = False):
        if not path or not os.path.exists(path): return
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            log.warning(f"Failed to load config {path}: {e}")
            return
        if not data or not isinstance(data, list):
            log.warning(f"Ignoring config {path}: expected a list of site profiles")
            return

        loaded = []
        for item in data:
            if not isinstance(item, dict) or not item.get("name"):
                log.warning(f"Skipping profile without a name in {path}")
                continue
            kwargs = {k: str(item[k]).rstrip("/") for k in _PROFILE_FIELDS if item.get(k)}
            try:
                if "delay" in item: kwargs["api_delay"] = float(item["delay"])
                if "max_retries" in item: kwargs["max_retries"] = int(item["max_retries"])
            except (TypeError, ValueError):
                log.warning(f"Invalid delay/max_retries for profile {item['name']} in {path}")
                continue
            loaded.append(SiteProfile(
                name=item["name"],
                domain_patterns=item.get("domains", []) or [],
                headers=item.get("headers", {}) or {},
                **kwargs
            ))
        # An explicitly requested file wins over everything already loaded
        if prepend:
            self.profiles[:0] = loaded
        else:
            self.profiles.extend(loaded)
        log.info(f"Loaded {len(loaded)} profiles from {path}")

    def get_profile(self, url: Optional[str] = None) -> SiteProfile:
        if url:
            for p in self.profiles:
                for pattern in p.domain_patterns:
                    try:
                        if re.search(pattern, url): return p
                    except re.error:
                        log.debug(f"Bad domain pattern {pattern!r} in profile {p.name}")
        return self.default_profile()

    def default_profile(self) -> SiteProfile:
        for p in self.profiles:
            if p.name == "default":
                return p
        return BUILTIN_PROFILES[0]
