import pytest

from images import HostContext, detect_environment, resolve_image_url


@pytest.mark.parametrize("path, host, expected", [
    ("/espresso.jpg", HostContext(hostname="localhost"), "/images/espresso.jpg"),
    ("latte.jpg", HostContext(hostname="localhost"), "/images/latte.jpg"),
    ("/cappuccino.jpg", HostContext(hostname="myuser.github.io", pathname="/my-repo/menu/"),
     "/my-repo/images/cappuccino.jpg"),
    ("/mocha.jpg", HostContext(hostname=None), "/images/mocha.jpg"),
    ("/mocha.jpg", HostContext(hostname="coffee.example.com", pathname="/menu/"), "/images/mocha.jpg"),
])
def test_resolve_examples(path, host, expected):
    assert resolve_image_url(path, host) == expected


def test_github_pages_site_root_has_no_base_path():
    host = HostContext(hostname="myuser.github.io", pathname="/")
    assert resolve_image_url("tea.jpg", host) == "/images/tea.jpg"


def test_extra_leading_slashes_are_collapsed():
    host = HostContext(hostname="myuser.github.io", pathname="/my-repo/")
    assert resolve_image_url("//tea.jpg", host) == "/my-repo/images/tea.jpg"


def test_images_prefix_is_not_doubled():
    host = HostContext(hostname="localhost")
    assert resolve_image_url("/images/scone.jpg", host) == "/images/scone.jpg"
    assert resolve_image_url("images/scone.jpg", host) == "/images/scone.jpg"


def test_absolute_urls_pass_through():
    host = HostContext(hostname="myuser.github.io", pathname="/my-repo/")
    url = "https://cdn.example.com/latte.jpg"
    assert resolve_image_url(url, host) == url


def test_explicit_base_path_wins():
    host = HostContext(hostname="myuser.github.io", pathname="/other/", base_path="/shop/")
    assert resolve_image_url("latte.jpg", host) == "/shop/images/latte.jpg"


def test_explicit_base_path_ignored_while_prerendering():
    host = HostContext(hostname=None, base_path="/shop")
    assert resolve_image_url("latte.jpg", host) == "/images/latte.jpg"


def test_resolve_follows_navigation():
    assert resolve_image_url("a.jpg", HostContext(hostname="u.github.io", pathname="/one/x")) == "/one/images/a.jpg"
    assert resolve_image_url("a.jpg", HostContext(hostname="u.github.io", pathname="/two/y")) == "/two/images/a.jpg"


def test_detect_environment():
    server = detect_environment(HostContext(hostname=None))
    assert server.is_server
    assert not (server.is_github_pages or server.is_localhost or server.is_custom_domain)
    assert server.hostname is None

    pages = detect_environment(HostContext(hostname="myuser.github.io"))
    assert (pages.is_github_pages, pages.is_localhost, pages.is_custom_domain) == (True, False, False)

    local = detect_environment(HostContext(hostname="127.0.0.1"))
    assert (local.is_github_pages, local.is_localhost, local.is_custom_domain) == (False, True, False)

    custom = detect_environment(HostContext(hostname="coffee.example.com"))
    assert (custom.is_github_pages, custom.is_localhost, custom.is_custom_domain) == (False, False, True)
    assert custom.hostname == "coffee.example.com"


def test_pathname_without_leading_slash_uses_first_segment():
    host = HostContext(hostname="u.github.io", pathname="my-repo/menu")
    assert resolve_image_url("latte.jpg", host) == "/my-repo/images/latte.jpg"
