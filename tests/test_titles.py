from generation.titles import extended_title, looks_like_lyrics, smart_title, variant_title


def test_looks_like_lyrics() -> None:
    assert looks_like_lyrics("[Verse]\nHello darkness")
    assert looks_like_lyrics("line one\nline two")
    assert looks_like_lyrics("припев о любви")
    assert not looks_like_lyrics("dreamy synthwave with female vocals")
    assert not looks_like_lyrics("   ")
    assert not looks_like_lyrics(None)


def test_smart_title_skips_section_markers() -> None:
    lyrics = "[Intro]\n\n[Verse 1]\n...Midnight drive, city lights!\nmore"
    assert smart_title(lyrics) == "Midnight drive, city lights"


def test_smart_title_caps_length_and_falls_back() -> None:
    long_line = "word " * 30
    title = smart_title(long_line)
    assert len(title) <= 60
    assert not title.endswith(" ")
    assert smart_title("[Chorus]\n!", fallback="Song") == "Song"
    assert smart_title(None) == "Untitled"


def test_variant_and_extended_titles() -> None:
    assert variant_title("Night Drive", 1) == "Night Drive (variant 1)"
    assert variant_title(None, 2) == "Untitled (variant 2)"
    assert extended_title(" Night Drive ") == "Night Drive (Extended)"
