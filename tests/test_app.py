"""Tests for the HTTP routes."""

import pytest
from pathlib import Path

from fastapi.testclient import TestClient

import datapages
from datapages import Config, create_app


@pytest.fixture
def site(tmp_path: Path) -> Path:
  pages = tmp_path / "templates" / "pages"
  pages.mkdir(parents=True)
  (pages / "index.html").write_text("<title>{{ site.title }}</title>")
  (pages / "about.html").write_text("{{ about }}|{{ team.lead }}")
  data = tmp_path / "data"
  data.mkdir()
  (data / "site.json").write_text('{"title": "Hi"}')
  return tmp_path


def make_client(site: Path, **overrides) -> TestClient:
  config = Config({
    "datapages": {
      "templateDirectory": str(site / "templates"),
      "dataDirectory": str(site / "data"),
    },
  })
  for key, value in overrides.items():
    config["datapages." + key] = value
  return TestClient(create_app(config))


class TestRoutes:
  def test_root_renders_index(self, site: Path):
    response = make_client(site).get("/")
    assert response.status_code == 200
    assert "Hi" in response.text
    assert response.headers["content-type"] == "text/html; charset=utf-8"

  def test_root_redirects_permanently(self, site: Path):
    response = make_client(site).get("/", follow_redirects=False)
    assert response.status_code == 308
    assert response.headers["location"] == "/index"

  def test_root_equals_index(self, site: Path):
    client = make_client(site)
    assert client.get("/").text == client.get("/index").text

  def test_unknown_page_is_not_found(self, site: Path):
    response = make_client(site).get("/nope")
    assert response.status_code == 404
    assert response.text == "Template 'nope' not found or rendering failed"

  def test_render_failure_is_not_found(self, site: Path):
    (site / "templates" / "pages" / "bad.html").write_text("{% if %}")
    assert make_client(site).get("/bad").status_code == 404

  def test_trailing_slash(self, site: Path):
    response = make_client(site).get("/index/")
    assert response.status_code == 200
    assert "Hi" in response.text

  def test_changes_are_picked_up(self, site: Path):
    client = make_client(site)
    assert client.get("/about").text == "|"
    (site / "data" / "about.txt").write_text("hello")
    (site / "data" / "team").mkdir()
    (site / "data" / "team" / "lead.txt").write_text("Ada")
    assert client.get("/about").text == "hello|Ada"

  def test_malformed_data_still_renders(self, site: Path):
    (site / "data" / "about.txt").write_text("still here")
    (site / "data" / "team.json").write_text("{broken")
    response = make_client(site).get("/about")
    assert response.status_code == 200
    assert response.text == "still here|"

  def test_missing_data_directory_renders(self, site: Path):
    response = make_client(site, dataDirectory=str(site / "nothing")).get("/index")
    assert response.status_code == 200
    assert response.text == "<title></title>"

  def test_data_key_named_items(self, site: Path):
    (site / "templates" / "pages" / "team.html").write_text("{{ team.items }}")
    (site / "data" / "team").mkdir()
    (site / "data" / "team" / "items.txt").write_text("A")
    response = make_client(site).get("/team")
    assert response.status_code == 200
    assert response.text == "A"


class TestServerErrors:
  def test_missing_template_directory(self, site: Path):
    response = make_client(site, templateDirectory=str(site / "nothing")).get("/index")
    assert response.status_code == 500
    assert response.text == "Failed to load templates"

  def test_unreadable_data_directory(self, site: Path, monkeypatch):
    def fake_listdir(path):
      raise PermissionError(13, "Permission denied", path)
    monkeypatch.setattr(datapages.os, "listdir", fake_listdir)

    response = make_client(site).get("/index")
    assert response.status_code == 500
    assert response.text == "Failed to load data files"
